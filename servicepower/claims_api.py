"""
ServicePower Claims REST API for the ServicePower Cloud Functions.
Retrieves claims from the JSON claim retrieval service and normalizes its
error responses.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import requests

from servicepower_common import (
    ErrorClass,
    FunctionResponse,
    TransportError,
    internal_error_response,
    json_response,
    preflight_response,
    request_params,
    timestamp,
    truncate,
)
from servicepower_config import (
    Credentials,
    ServicePowerConfig,
    is_debug,
    load_config,
    missing_credentials_response,
    resolve_param,
)

logger = logging.getLogger(__name__)

CLAIMS_URLS = {
    "development": {
        "northAmerica": "https://upgdev.servicepower.com:8443/services/claim/v1/retrieval",
        "europe": "https://claimsqa-eu.servicepower.com/services/claim/v1/retrieval",
    },
    "production": {
        "northAmerica": "https://claimworks.servicepower.com:8443/services/claim/v1/retrieval",
        "europe": "https://claims-eu.servicepower.com/services/claim/v1/retrieval",
    },
}

FILTER_FIELDS = (
    "manufacturerName",
    "serviceCenterNumber",
    "claimIdentifier",
    "claimNumber",
    "callNumber",
)
NUMERIC_FILTER_FIELDS = (
    "claimBatchNumber",
    "claimSequenceNumber",
)

APPLICATION_ERROR_CODE = "ER"


@dataclass
class ClaimsOutcome:
    """Classified result of one claims retrieval call."""

    status_code: int
    data: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    error_class: Optional[ErrorClass] = None

    @property
    def ok(self) -> bool:
        return self.error_class is None

    @property
    def claims(self) -> List[Dict[str, Any]]:
        return (self.data or {}).get("claims") or []


def claims_url(environment: str, region: str) -> Optional[str]:
    return CLAIMS_URLS.get(environment, {}).get(region)


def _to_int(value: Any) -> Any:
    # Best effort: values that are not integers are sent as given
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


def collect_filters(*sources: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Pick the search filters present in the given sources (first source wins).

    Absent or empty filters are left out entirely.
    """
    filters = {}
    for field in FILTER_FIELDS + NUMERIC_FILTER_FIELDS:
        value = resolve_param(field, *sources)
        if value is not None:
            filters[field] = value
    return filters


def build_claims_request(
    credentials: Credentials,
    filters: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Build the claim retrieval request body.

    Args:
        credentials: ServicePower credentials
        filters: Optional search filters (unknown keys are ignored)

    Returns:
        Request body with the authentication block and any present filters
    """
    request_body = {
        "authentication": {
            "userId": credentials.user_id,
            "password": credentials.password,
        }
    }

    filters = filters or {}
    for field in FILTER_FIELDS:
        if filters.get(field) not in (None, ""):
            request_body[field] = filters[field]
    for field in NUMERIC_FILTER_FIELDS:
        if filters.get(field) not in (None, ""):
            request_body[field] = _to_int(filters[field])

    return request_body


def mask_request_body(request_body: Dict[str, Any], credentials: Credentials) -> Dict[str, Any]:
    return {**request_body, "authentication": credentials.masked_rest_fields()}


def classify_claims_response(
    status_code: int,
    text: str,
    credentials: Optional[Credentials] = None,
    api_url: Optional[str] = None,
) -> ClaimsOutcome:
    """Turn a raw claims HTTP response into a ClaimsOutcome.

    Order: unparseable body (502, or the HTTP status when that is not 2xx),
    HTTP failure (status passed through), ServicePower error (400), success.
    """
    attempted = credentials.masked_rest_fields() if credentials else None
    http_ok = 200 <= status_code < 300

    try:
        data = json.loads(text)
    except ValueError:
        data = None

    if not isinstance(data, dict):
        return ClaimsOutcome(
            status_code=status_code if not http_ok else 502,
            error_class=ErrorClass.MALFORMED_RESPONSE,
            error={
                "type": "Invalid Response",
                "error": "Server returned non-JSON response",
                "httpStatus": status_code,
                "rawResponse": text,
            },
        )

    if not http_ok:
        return ClaimsOutcome(
            status_code=status_code,
            data=data,
            error_class=ErrorClass.TRANSPORT_FAILURE,
            error={
                "type": "HTTP Error",
                "httpStatus": status_code,
                "error": data,
                "attemptedCredentials": attempted,
                "apiUrl": api_url,
            },
        )

    messages = data.get("messages")
    if data.get("responseCode") == APPLICATION_ERROR_CODE or messages not in (None, ""):
        return ClaimsOutcome(
            status_code=400,
            data=data,
            error_class=ErrorClass.APPLICATION_ERROR,
            error={
                "type": "ServicePower API Error",
                "responseCode": data.get("responseCode"),
                "messages": messages,
                "transactionId": data.get("transactionId"),
                "attemptedCredentials": attempted,
            },
        )

    return ClaimsOutcome(status_code=200, data=data)


class ClaimsApiClient:
    """Client for the ServicePower claim retrieval REST service."""

    def __init__(
        self,
        environment: str = "development",
        region: str = "northAmerica",
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the claims client.

        Args:
            environment: 'development' or 'production'
            region: 'northAmerica' or 'europe'
            timeout: Request timeout in seconds (None waits indefinitely)
            session: Existing requests session (or None to create one)

        Raises:
            ValueError: If the environment/region combination is unknown
        """
        self.api_url = claims_url(environment, region)
        if not self.api_url:
            raise ValueError(f"Invalid environment '{environment}' or region '{region}'")

        self.environment = environment
        self.region = region
        self.timeout = timeout
        self._owns_session = session is None
        self.session = session or requests.Session()

    def retrieve_claims(
        self,
        credentials: Credentials,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> ClaimsOutcome:
        """Retrieve claims and classify the response.

        Args:
            credentials: ServicePower credentials
            filters: Optional search filters

        Returns:
            ClaimsOutcome

        Raises:
            TransportError: If no HTTP response was received
        """
        request_body = build_claims_request(credentials, filters)

        logger.info("=== CLAIMS API REQUEST ===")
        logger.info("API URL: %s (environment=%s, region=%s)", self.api_url, self.environment, self.region)
        logger.info("Request Body: %s", json.dumps(mask_request_body(request_body, credentials)))

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            response = self.session.post(
                self.api_url,
                json=request_body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"Error calling ServicePower Claims API at {self.api_url}: {e}") from e

        logger.info("Response Status: %s", response.status_code)
        logger.info("Response Body: %s", truncate(response.text))

        outcome = classify_claims_response(
            response.status_code, response.text, credentials, self.api_url
        )
        if not outcome.ok:
            logger.error("%s (%s): %s", outcome.error["type"], outcome.status_code, outcome.error)
        return outcome

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def __enter__(self) -> "ClaimsApiClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def invalid_endpoint_response(environment: str, region: str) -> FunctionResponse:
    return json_response({
        "status": "error",
        "error": "Invalid configuration",
        "message": f"Invalid environment '{environment}' or region '{region}'",
        "validEnvironments": list(CLAIMS_URLS),
        "validRegions": list(CLAIMS_URLS["development"]),
    }, 400)


# Cloud Function entry points
def get_claim_data(
    request,
    config: Optional[ServicePowerConfig] = None,
    session: Optional[requests.Session] = None,
) -> FunctionResponse:
    """Cloud Function entry point for retrieving ServicePower claims.

    Parameters (JSON body or query string): userId, password, environment,
    region and the optional filters manufacturerName, serviceCenterNumber,
    claimIdentifier, claimNumber, callNumber, claimBatchNumber,
    claimSequenceNumber.

    Args:
        request: HTTP request
        config: Deployment config (loaded from the environment when None)
        session: requests session used for the outbound call

    Returns:
        JSON response with the claims or a normalized error
    """
    if request.method == "OPTIONS":
        return preflight_response()

    try:
        config = config or load_config()
        body, query = request_params(request)

        credentials, missing = config.resolve_credentials(body, query)
        if missing:
            return missing_credentials_response(missing)

        environment = resolve_param("environment", body, query, default=config.claims_environment)
        region = resolve_param("region", body, query, default=config.claims_region)
        if not claims_url(environment, region):
            return invalid_endpoint_response(environment, region)

        filters = collect_filters(body, query)

        with ClaimsApiClient(environment, region, timeout=config.timeout, session=session) as client:
            outcome = client.retrieve_claims(credentials, filters)

        if not outcome.ok:
            return json_response({"status": "error", **outcome.error}, outcome.status_code)

        return json_response({
            "status": "success",
            "responseCode": outcome.data.get("responseCode"),
            "transactionId": outcome.data.get("transactionId"),
            "claims": outcome.data.get("claims"),
            "metadata": {
                "environment": environment,
                "region": region,
                "apiUrl": client.api_url,
                "timestamp": timestamp(),
            },
        })

    except Exception as e:
        logger.exception("Exception in get_claim_data")
        return internal_error_response(e, debug=config.debug if config else is_debug())


def test_claims_connection(
    request,
    config: Optional[ServicePowerConfig] = None,
    session: Optional[requests.Session] = None,
) -> FunctionResponse:
    """Cloud Function entry point for checking claims credentials.

    Always calls the development North America endpoint without filters.

    Args:
        request: HTTP request (optional userId, password)
        config: Deployment config (loaded from the environment when None)
        session: requests session used for the outbound call

    Returns:
        JSON response with a success flag and the number of claims returned
    """
    if request.method == "OPTIONS":
        return preflight_response()

    try:
        config = config or load_config()
        body, query = request_params(request)

        credentials, missing = config.resolve_credentials(body, query)
        if missing:
            return missing_credentials_response(missing, success=False)

        logger.info("=== TESTING CLAIMS API CONNECTION ===")

        with ClaimsApiClient("development", "northAmerica", timeout=config.timeout, session=session) as client:
            outcome = client.retrieve_claims(credentials)

        if not outcome.ok:
            return json_response({"success": False, **outcome.error}, outcome.status_code)

        return json_response({
            "success": True,
            "message": "Successfully connected to ServicePower Claims API!",
            "responseCode": outcome.data.get("responseCode"),
            "transactionId": outcome.data.get("transactionId"),
            "claimsCount": len(outcome.claims),
            "usedCredentials": credentials.masked_rest_fields(),
            "response": outcome.data,
        })

    except Exception as e:
        logger.exception("Exception in test_claims_connection")
        return internal_error_response(
            e, debug=config.debug if config else is_debug(), success=False
        )


# Example usage
if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="ServicePower claims retrieval")
    parser.add_argument("--user-id", help="ServicePower user ID (default: SP_USER_ID)")
    parser.add_argument("--password", help="ServicePower password (default: SP_PASSWORD)")
    parser.add_argument("--environment", choices=sorted(CLAIMS_URLS), help="API environment")
    parser.add_argument("--region", choices=sorted(CLAIMS_URLS["development"]), help="API region")
    parser.add_argument("--claim-number", help="Get a specific claim by number")
    parser.add_argument("--claim-identifier", help="Claim identifier")
    parser.add_argument("--call-number", help="Call number")
    parser.add_argument("--manufacturer-name", help="Manufacturer name")
    parser.add_argument("--service-center-number", help="Service center number")
    parser.add_argument("--count", type=int, default=3, help="Number of claims to summarize")

    args = parser.parse_args()

    cli_config = load_config()
    cli_credentials, cli_missing = cli_config.resolve_credentials(
        {"userId": args.user_id, "password": args.password}, {}
    )
    if cli_missing:
        print(f"Error: Missing credentials: {', '.join(cli_missing)}")
        print("Pass --user-id/--password or set SP_USER_ID and SP_PASSWORD")
        exit(1)

    cli_filters = collect_filters({
        "claimNumber": args.claim_number,
        "claimIdentifier": args.claim_identifier,
        "callNumber": args.call_number,
        "manufacturerName": args.manufacturer_name,
        "serviceCenterNumber": args.service_center_number,
    })

    with ClaimsApiClient(
        args.environment or cli_config.claims_environment,
        args.region or cli_config.claims_region,
        timeout=cli_config.timeout,
    ) as cli_client:
        print(f"API URL: {cli_client.api_url}")
        print(json.dumps(mask_request_body(build_claims_request(cli_credentials, cli_filters), cli_credentials), indent=2))
        try:
            result = cli_client.retrieve_claims(cli_credentials, cli_filters)
        except TransportError as e:
            print(f"Connection Error: {e}")
            print("Check internet connectivity, VPN and firewall settings")
            exit(1)

    if not result.ok:
        print(f"ERROR ({result.status_code})")
        print(json.dumps(result.error, indent=2))
        exit(1)

    print("SUCCESS")
    print(f"Transaction ID: {result.data.get('transactionId')}")
    print(f"Claims Found: {len(result.claims)}")

    for i, claim in enumerate(result.claims[:args.count]):
        print(f"\n--- Claim {i + 1} ---")
        print(f"Claim Number: {claim.get('claimNumber')}")
        print(f"Claim Identifier: {claim.get('claimIdentifier')}")
        print(f"Status: {claim.get('claimStatusDescription')} ({claim.get('claimStatusCode')})")
        print(f"Brand: {claim.get('brandName')}")
        print(f"Model: {claim.get('modelNumber')}")
        print(f"Payment Amount: {claim.get('paymentAmount')}")
        print(f"Servicer: {claim.get('servicerName')}")

    if not result.claims:
        print("No claims found. Authentication and connection succeeded.")
