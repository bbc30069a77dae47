import json

import claims_api
from conftest import fake_session, make_request
from servicepower_common import ErrorClass

SUCCESS_BODY = {
    "responseCode": "OK",
    "transactionId": "TX-20251125-0001",
    "claims": [
        {"claimNumber": "12345", "claimStatusCode": "PD", "brandName": "Acme"},
        {"claimNumber": "12346", "claimStatusCode": "OP", "brandName": "Acme"},
    ],
}

ERROR_BODY = {
    "responseCode": "ER",
    "transactionId": "TX-20251125-0002",
    "messages": [{"message": "Invalid userId or password"}],
}


def test_request_with_only_credentials_has_no_filters(credentials):
    request_body = claims_api.build_claims_request(credentials, claims_api.collect_filters({}, {}))

    assert list(request_body) == ["authentication"]
    assert request_body["authentication"] == {"userId": "met11106", "password": "B314@ezp!!"}


def test_request_includes_present_filters_and_converts_numbers(credentials):
    filters = claims_api.collect_filters(
        {"claimNumber": "12345", "claimBatchNumber": "7"},
        {"claimNumber": "ignored", "claimSequenceNumber": "3", "manufacturerName": ""},
    )

    request_body = claims_api.build_claims_request(credentials, filters)

    assert request_body["claimNumber"] == "12345"
    assert request_body["claimBatchNumber"] == 7
    assert request_body["claimSequenceNumber"] == 3
    assert "manufacturerName" not in request_body
    assert None not in request_body.values()


def test_request_passes_non_numeric_sequence_through(credentials):
    request_body = claims_api.build_claims_request(credentials, {"claimSequenceNumber": "abc"})

    assert request_body["claimSequenceNumber"] == "abc"


def test_masked_request_body_hides_password(credentials):
    request_body = claims_api.build_claims_request(credentials, {"claimNumber": "1"})

    masked = claims_api.mask_request_body(request_body, credentials)

    assert masked["authentication"]["password"] == "B3****!!"
    assert request_body["authentication"]["password"] == "B314@ezp!!"


def test_classify_success_keeps_transaction_id():
    outcome = claims_api.classify_claims_response(200, json.dumps(SUCCESS_BODY))

    assert outcome.ok
    assert outcome.status_code == 200
    assert outcome.data["transactionId"] == "TX-20251125-0001"
    assert len(outcome.claims) == 2


def test_classify_application_error_code(credentials):
    outcome = claims_api.classify_claims_response(200, json.dumps(ERROR_BODY), credentials)

    assert outcome.status_code == 400
    assert outcome.error_class == ErrorClass.APPLICATION_ERROR
    assert outcome.error["messages"] == ERROR_BODY["messages"]
    assert outcome.error["transactionId"] == "TX-20251125-0002"
    assert outcome.error["attemptedCredentials"] == {"userId": "met11106", "password": "B3****!!"}


def test_classify_messages_without_error_code():
    body = {"responseCode": "OK", "messages": []}

    outcome = claims_api.classify_claims_response(200, json.dumps(body))

    assert outcome.status_code == 400


def test_classify_http_failure_passes_status_through():
    outcome = claims_api.classify_claims_response(
        403, json.dumps({"error": "Forbidden"}), api_url="https://example.test/claims"
    )

    assert outcome.status_code == 403
    assert outcome.error_class == ErrorClass.TRANSPORT_FAILURE
    assert outcome.error["error"] == {"error": "Forbidden"}
    assert outcome.error["apiUrl"] == "https://example.test/claims"


def test_classify_non_json_body_checked_before_http_status():
    outcome = claims_api.classify_claims_response(404, "<html>Not Found</html>")

    assert outcome.status_code == 404
    assert outcome.error_class == ErrorClass.MALFORMED_RESPONSE
    assert outcome.error["rawResponse"] == "<html>Not Found</html>"


def test_classify_non_json_success_is_bad_gateway():
    outcome = claims_api.classify_claims_response(200, "OK")

    assert outcome.status_code == 502
    assert outcome.error_class == ErrorClass.MALFORMED_RESPONSE


def test_claims_url_selection():
    assert claims_api.claims_url("production", "europe") == (
        "https://claims-eu.servicepower.com/services/claim/v1/retrieval"
    )
    assert claims_api.claims_url("staging", "northAmerica") is None


def test_get_claim_data_success(config):
    session = fake_session(200, json.dumps(SUCCESS_BODY))
    request = make_request("POST", json_body={"claimNumber": "12345", "region": "europe"})

    body, status, headers = claims_api.get_claim_data(request, config=config, session=session)

    assert status == 200
    assert headers["Access-Control-Allow-Origin"] == "*"
    assert body["status"] == "success"
    assert body["transactionId"] == "TX-20251125-0001"
    assert body["claims"] == SUCCESS_BODY["claims"]
    assert body["metadata"]["environment"] == "development"
    assert body["metadata"]["region"] == "europe"
    assert body["metadata"]["apiUrl"] == claims_api.CLAIMS_URLS["development"]["europe"]

    sent = session.post.call_args.kwargs["json"]
    assert sent == {
        "authentication": {"userId": "cfg-user", "password": "cfg-secret-99"},
        "claimNumber": "12345",
    }
    assert session.post.call_args.kwargs["headers"]["Accept"] == "application/json"


def test_get_claim_data_application_error(config):
    session = fake_session(200, json.dumps(ERROR_BODY))

    body, status, _ = claims_api.get_claim_data(make_request(), config=config, session=session)

    assert status == 400
    assert body["status"] == "error"
    assert body["responseCode"] == "ER"
    assert body["messages"] == ERROR_BODY["messages"]
    assert "cfg-secret-99" not in json.dumps(body)


def test_get_claim_data_rejects_unknown_region(config):
    session = fake_session()

    body, status, _ = claims_api.get_claim_data(
        make_request(query={"region": "asia"}), config=config, session=session
    )

    assert status == 400
    assert body["error"] == "Invalid configuration"
    assert body["validEnvironments"] == ["development", "production"]
    assert body["validRegions"] == ["northAmerica", "europe"]
    session.post.assert_not_called()


def test_get_claim_data_preflight():
    body, status, _ = claims_api.get_claim_data(make_request("OPTIONS"))

    assert (body, status) == ("", 204)


def test_get_claim_data_unexpected_error_is_500(config):
    session = fake_session()
    session.post.side_effect = ValueError("bad payload")

    body, status, _ = claims_api.get_claim_data(make_request(), config=config, session=session)

    assert status == 500
    assert body["status"] == "error"
    assert body["message"] == "bad payload"


def test_claims_connection_check_counts_claims(config):
    session = fake_session(200, json.dumps(SUCCESS_BODY))

    body, status, _ = claims_api.test_claims_connection(
        make_request(query={"claimNumber": "ignored", "region": "europe"}), config=config, session=session
    )

    assert status == 200
    assert body["success"] is True
    assert body["claimsCount"] == 2
    assert body["usedCredentials"] == {"userId": "cfg-user", "password": "cf****99"}
    assert session.post.call_args.args[0] == claims_api.CLAIMS_URLS["development"]["northAmerica"]
    assert list(session.post.call_args.kwargs["json"]) == ["authentication"]


def test_claims_connection_check_reports_non_json(config):
    body, status, _ = claims_api.test_claims_connection(
        make_request(), config=config, session=fake_session(502, "Bad Gateway")
    )

    assert status == 502
    assert body["success"] is False
    assert body["rawResponse"] == "Bad Gateway"
