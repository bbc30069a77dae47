"""
ServicePower SOAP API for the ServicePower Cloud Functions.
Fetches call information with the getCallInfoSearch operation and maps SOAP
faults and ServicePower error codes to HTTP responses.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, Optional, Tuple
from xml.parsers.expat import ExpatError
from xml.sax.saxutils import escape

import requests
import xmltodict

from servicepower_common import (
    ErrorClass,
    FunctionResponse,
    TransportError,
    format_vendor_date,
    internal_error_response,
    json_response,
    lookup_alias,
    mask_password,
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

SOAP_URLS = {
    "staging": "https://fssstag.servicepower.com/sms/services/SPDService",
    "production": "https://fss.servicepower.com/sms/services/SPDService",
}

SOAP_NAMESPACE = "urn:SPDServicerService"
CALL_INFO_SEARCH_ACTION = f"{SOAP_NAMESPACE}#getCallInfoSearch"

# Fixed window used by the connection test
TEST_FROM_DATE = "2024-01-01"
TEST_TO_DATE = "2024-01-02"

ENVELOPE_ALIASES = ("Envelope",)
BODY_ALIASES = ("Body",)
FAULT_ALIASES = ("Fault",)
# ServicePower answers getCallInfoSearch with a misspelled element on some
# deployments; the correctly spelled names are kept for the others.
CALL_INFO_RESPONSE_ALIASES = (
    "getCallInfoResponce",
    "getCallInfoSearchResponse",
    "getCallInfoResponse",
)

AUTH_ERROR_CODE = "SP005"
NOT_FOUND_ERROR_CODE = "SP001"
INVALID_REQUEST_ERROR_CODE = "SP002"
AUTH_HINT = "Authentication failed. Check that UserID, Password, and SvcrAcct are correct."


@dataclass
class SoapOutcome:
    """Classified result of one SOAP exchange."""

    status_code: int
    data: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    error_class: Optional[ErrorClass] = None

    @property
    def ok(self) -> bool:
        return self.error_class is None


def cdata(value: Any) -> str:
    """Wrap a value in CDATA, splitting any embedded ``]]>`` terminator."""
    text = "" if value is None else str(value)
    return "<![CDATA[" + text.replace("]]>", "]]]]><![CDATA[>") + "]]>"


def build_call_info_search_envelope(
    credentials: Credentials,
    from_date: str,
    to_date: str,
    call_no: str = "",
    version_no: str = "",
    mfg_id: Optional[str] = None,
) -> str:
    """Build the getCallInfoSearch SOAP envelope.

    Credentials are wrapped in CDATA so passwords with XML special characters
    reach ServicePower unchanged. Callno and Versionno are always sent, empty
    when not given; MfgId is only sent when known.

    Args:
        credentials: ServicePower credentials
        from_date: Start of the search window (YYYY-MM-DD)
        to_date: End of the search window (YYYY-MM-DD)
        call_no: Optional call number
        version_no: Optional call version number
        mfg_id: Optional manufacturer id

    Returns:
        SOAP envelope as a string
    """
    mfg_line = f"\n            <MfgId>{cdata(mfg_id)}</MfgId>" if mfg_id else ""
    return f"""<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/" xmlns:urn="{SOAP_NAMESPACE}">
   <soapenv:Header/>
   <soapenv:Body>
      <urn:getCallInfoSearch>
         <UserInfo>
            <UserID>{cdata(credentials.user_id)}</UserID>
            <Password>{cdata(credentials.password)}</Password>
            <SvcrAcct>{cdata(credentials.svcr_acct)}</SvcrAcct>{mfg_line}
         </UserInfo>
         <FromDateTime>{escape(str(from_date))}</FromDateTime>
         <ToDateTime>{escape(str(to_date))}</ToDateTime>
         <Callno>{escape(str(call_no or ""))}</Callno>
         <Versionno>{escape(str(version_no or ""))}</Versionno>
      </urn:getCallInfoSearch>
   </soapenv:Body>
</soapenv:Envelope>"""


def default_search_window(lookback_days: int, today: Optional[date] = None) -> Tuple[str, str]:
    """Return (from_date, to_date) covering the last ``lookback_days`` days."""
    today = today or date.today()
    return format_vendor_date(today - timedelta(days=lookback_days)), format_vendor_date(today)


def parse_soap_response(xml_text: str) -> Dict[str, Any]:
    """Convert a SOAP response into nested dicts, keeping namespace prefixes."""
    return xmltodict.parse(xml_text)


def _text(value: Any) -> Optional[str]:
    # Elements with attributes come back from xmltodict as {"@attr": ..., "#text": ...}
    if isinstance(value, dict):
        value = value.get("#text")
    if value is None:
        return None
    return str(value)


def extract_soap_error(
    parsed: Dict[str, Any],
    credentials: Optional[Credentials] = None,
) -> Optional[SoapOutcome]:
    """Classify a parsed SOAP response that may carry an error.

    A SOAP fault is checked first and always maps to 500; application error
    fields are only inspected when there is no fault.

    Args:
        parsed: Response converted by parse_soap_response
        credentials: Credentials used for the call, echoed back masked

    Returns:
        SoapOutcome describing the error, or None if the response is a success
    """
    attempted = credentials.masked_soap_fields() if credentials else None

    envelope = lookup_alias(parsed, ENVELOPE_ALIASES)
    soap_body = lookup_alias(envelope, BODY_ALIASES)

    fault = lookup_alias(soap_body, FAULT_ALIASES)
    if fault is not None:
        fault = fault if isinstance(fault, dict) else {"faultstring": _text(fault)}
        return SoapOutcome(
            status_code=500,
            error_class=ErrorClass.PROTOCOL_FAULT,
            error={
                "type": "SOAP Fault",
                "faultcode": _text(fault.get("faultcode")),
                "faultstring": _text(fault.get("faultstring")),
                "detail": fault.get("detail"),
                "attemptedCredentials": attempted,
            },
        )

    call_info_response = lookup_alias(soap_body, CALL_INFO_RESPONSE_ALIASES)
    error_info = lookup_alias(call_info_response, ("ErrorInfo",))
    if isinstance(error_info, list):
        error_info = error_info[0] if error_info else None
    if not error_info:
        return None

    if not isinstance(error_info, dict):
        error_info = {"Description": error_info}

    error_code = _text(error_info.get("Code"))
    error_description = _text(error_info.get("Description"))
    error_cause = _text(error_info.get("Cause"))
    description = error_description or ""

    status_code = 500
    hint = None
    if error_code == AUTH_ERROR_CODE or "Password" in description:
        status_code = 401
        hint = AUTH_HINT
    elif error_code == NOT_FOUND_ERROR_CODE or "not found" in description:
        status_code = 404
    elif error_code == INVALID_REQUEST_ERROR_CODE or "Invalid" in description:
        status_code = 400

    return SoapOutcome(
        status_code=status_code,
        error_class=ErrorClass.APPLICATION_ERROR,
        error={
            "type": "ServicePower API Error",
            "code": error_code,
            "description": error_description,
            "cause": error_cause,
            "hint": hint,
            "attemptedCredentials": attempted,
        },
    )


def classify_soap_exchange(
    status_code: int,
    text: str,
    credentials: Optional[Credentials] = None,
) -> SoapOutcome:
    """Turn a raw SOAP HTTP response into a SoapOutcome.

    Order: HTTP failure (status passed through), unparseable body (502, which
    covers XML declaring entities), SOAP fault, application error, success.
    """
    attempted = credentials.masked_soap_fields() if credentials else None

    if not 200 <= status_code < 300:
        return SoapOutcome(
            status_code=status_code,
            error_class=ErrorClass.TRANSPORT_FAILURE,
            error={
                "type": "HTTP Error",
                "message": f"ServicePower API returned {status_code}",
                "details": text,
                "attemptedCredentials": attempted,
            },
        )

    try:
        parsed = parse_soap_response(text)
    except (ExpatError, ValueError) as e:
        return SoapOutcome(
            status_code=502,
            error_class=ErrorClass.MALFORMED_RESPONSE,
            error={
                "type": "Invalid Response",
                "message": f"ServicePower returned a non-XML response: {e}",
                "httpStatus": status_code,
                "rawResponse": text,
            },
        )

    error_outcome = extract_soap_error(parsed, credentials)
    if error_outcome:
        return error_outcome

    return SoapOutcome(status_code=200, data=parsed)


class ServicePowerSoapClient:
    """Client for the ServicePower SPDService SOAP endpoint."""

    def __init__(
        self,
        environment: str = "staging",
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the SOAP client.

        Args:
            environment: 'staging' or 'production' (unknown names use staging)
            timeout: Request timeout in seconds (None waits indefinitely)
            session: Existing requests session (or None to create one)
        """
        self.environment = environment if environment in SOAP_URLS else "staging"
        self.url = SOAP_URLS[self.environment]
        self.timeout = timeout
        self._owns_session = session is None
        self.session = session or requests.Session()

    def post_envelope(self, envelope: str, action: str = CALL_INFO_SEARCH_ACTION) -> Tuple[int, str]:
        """POST a SOAP envelope.

        ServicePower rejects calls without an explicit SOAPAction header.

        Returns:
            (HTTP status, response body)

        Raises:
            TransportError: If no HTTP response was received
        """
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": action,
        }
        try:
            response = self.session.post(
                self.url,
                data=envelope.encode("utf-8"),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"Error calling ServicePower SOAP API at {self.url}: {e}") from e

        return response.status_code, response.text

    def get_call_info_search(
        self,
        credentials: Credentials,
        from_date: str,
        to_date: str,
        call_no: str = "",
        version_no: str = "",
        mfg_id: Optional[str] = None,
    ) -> SoapOutcome:
        """Run getCallInfoSearch and classify the response."""
        envelope = build_call_info_search_envelope(
            credentials, from_date, to_date, call_no, version_no, mfg_id
        )

        logger.info("SOAP URL: %s", self.url)
        logger.info(
            "Using credentials - UserID: %s Password: %s SvcrAcct: %s",
            credentials.user_id,
            mask_password(credentials.password),
            credentials.svcr_acct,
        )

        status_code, text = self.post_envelope(envelope)
        logger.info("ServicePower SOAP response %s: %s", status_code, truncate(text))

        outcome = classify_soap_exchange(status_code, text, credentials)
        if not outcome.ok:
            logger.error("%s (%s): %s", outcome.error["type"], outcome.status_code, outcome.error)
        return outcome

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def __enter__(self) -> "ServicePowerSoapClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# Cloud Function entry points
def get_service_power_data(
    request,
    config: Optional[ServicePowerConfig] = None,
    session: Optional[requests.Session] = None,
) -> FunctionResponse:
    """Cloud Function entry point for fetching ServicePower call information.

    Parameters (JSON body or query string): userId, password, svcrAcct,
    mfgId, environment, fromDate, toDate, callNo, versionNo.

    Args:
        request: HTTP request
        config: Deployment config (loaded from the environment when None)
        session: requests session used for the outbound call

    Returns:
        JSON response with the call information or a normalized error
    """
    if request.method == "OPTIONS":
        return preflight_response()

    try:
        config = config or load_config()
        body, query = request_params(request)

        credentials, missing = config.resolve_credentials(body, query)
        if missing:
            return missing_credentials_response(missing)

        environment = resolve_param("environment", body, query, default=config.soap_environment)
        default_from, default_to = default_search_window(config.lookback_days)
        from_date = resolve_param("fromDate", body, query, default=default_from)
        to_date = resolve_param("toDate", body, query, default=default_to)
        call_no = resolve_param("callNo", body, query, default="")
        version_no = resolve_param("versionNo", body, query, default="")
        mfg_id = resolve_param("mfgId", body, query, config.as_params())

        logger.info("Fetching ServicePower SOAP data from %s to %s", from_date, to_date)

        with ServicePowerSoapClient(environment, timeout=config.timeout, session=session) as client:
            outcome = client.get_call_info_search(
                credentials, from_date, to_date, call_no, version_no, mfg_id
            )

        if not outcome.ok:
            return json_response({"status": "error", "error": outcome.error}, outcome.status_code)

        return json_response({
            "status": "success",
            "data": outcome.data,
            "metadata": {
                "environment": client.environment,
                "fromDate": from_date,
                "toDate": to_date,
                "timestamp": timestamp(),
            },
        })

    except Exception as e:
        logger.exception("Error connecting to ServicePower")
        return internal_error_response(e, debug=config.debug if config else is_debug())


def test_soap_connection(
    request,
    config: Optional[ServicePowerConfig] = None,
    session: Optional[requests.Session] = None,
) -> FunctionResponse:
    """Cloud Function entry point for checking SOAP credentials against staging.

    Args:
        request: HTTP request (optional userId, password, svcrAcct)
        config: Deployment config (loaded from the environment when None)
        session: requests session used for the outbound call

    Returns:
        JSON response with a success flag
    """
    if request.method == "OPTIONS":
        return preflight_response()

    try:
        config = config or load_config()
        body, query = request_params(request)

        credentials, missing = config.resolve_credentials(body, query)
        if missing:
            return missing_credentials_response(missing, success=False)

        logger.info("=== TESTING SOAP CONNECTION ===")

        with ServicePowerSoapClient("staging", timeout=config.timeout, session=session) as client:
            outcome = client.get_call_info_search(credentials, TEST_FROM_DATE, TEST_TO_DATE)

        if not outcome.ok:
            return json_response({"success": False, **outcome.error}, outcome.status_code)

        logger.info("Connection successful")
        return json_response({
            "success": True,
            "message": "Successfully connected to ServicePower SOAP API!",
            "usedCredentials": credentials.masked_soap_fields(),
            "response": outcome.data,
        })

    except Exception as e:
        logger.exception("Exception while testing SOAP connection")
        return internal_error_response(
            e, debug=config.debug if config else is_debug(), success=False
        )


# Example usage
if __name__ == "__main__":
    import argparse
    import json

    parser = argparse.ArgumentParser(description="ServicePower SOAP call info search")
    parser.add_argument("--user-id", help="ServicePower user ID (default: SP_USER_ID)")
    parser.add_argument("--password", help="ServicePower password (default: SP_PASSWORD)")
    parser.add_argument("--svcr-acct", help="Servicer account (default: user ID)")
    parser.add_argument("--mfg-id", help="Manufacturer ID")
    parser.add_argument("--environment", choices=sorted(SOAP_URLS), help="SOAP environment")
    parser.add_argument("--from-date", help="Start date (YYYY-MM-DD)")
    parser.add_argument("--to-date", help="End date (YYYY-MM-DD)")
    parser.add_argument("--call-no", default="", help="Call number")
    parser.add_argument("--version-no", default="", help="Call version number")

    args = parser.parse_args()

    cli_config = load_config()
    cli_params = {
        "userId": args.user_id,
        "password": args.password,
        "svcrAcct": args.svcr_acct,
    }
    cli_credentials, cli_missing = cli_config.resolve_credentials(cli_params, {})
    if cli_missing:
        print(f"Error: Missing credentials: {', '.join(cli_missing)}")
        print("Pass --user-id/--password or set SP_USER_ID and SP_PASSWORD")
        exit(1)

    window_from, window_to = default_search_window(cli_config.lookback_days)
    from_date = args.from_date or window_from
    to_date = args.to_date or window_to

    print(f"User ID: {cli_credentials.user_id}")
    print(f"Password: {mask_password(cli_credentials.password)}")
    print(f"Window: {from_date} to {to_date}")

    with ServicePowerSoapClient(
        args.environment or cli_config.soap_environment, timeout=cli_config.timeout
    ) as cli_client:
        print(f"SOAP URL: {cli_client.url}")
        result = cli_client.get_call_info_search(
            cli_credentials,
            from_date,
            to_date,
            args.call_no,
            args.version_no,
            args.mfg_id or cli_config.mfg_id,
        )

    if result.ok:
        print("SUCCESS")
        print(json.dumps(result.data, indent=2))
    else:
        print(f"ERROR ({result.status_code})")
        print(json.dumps(result.error, indent=2))
        exit(1)
