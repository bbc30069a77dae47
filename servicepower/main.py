"""
Main Cloud Function entry points for the ServicePower integration.

SOAP API (call information):
    get_service_power_data, test_soap_connection, test_connection
JSON REST API (claims):
    get_claim_data, test_claims_connection
"""

import os

import functions_framework

import claims_api
import soap_api
from servicepower_common import configure_logging

configure_logging(os.environ.get("LOG_LEVEL", "INFO"))


@functions_framework.http
def get_service_power_data(request):
    """HTTP-triggered function to fetch call information from the SOAP API.

    Args:
        request: HTTP request

    Returns:
        JSON response with the call information
    """
    return soap_api.get_service_power_data(request)


@functions_framework.http
def test_soap_connection(request):
    """HTTP-triggered function to check SOAP API credentials.

    Args:
        request: HTTP request

    Returns:
        JSON response with a success flag
    """
    return soap_api.test_soap_connection(request)


@functions_framework.http
def test_connection(request):
    """Older name of test_soap_connection, kept for existing callers."""
    return soap_api.test_soap_connection(request)


@functions_framework.http
def get_claim_data(request):
    """HTTP-triggered function to retrieve claims from the JSON REST API.

    Args:
        request: HTTP request

    Returns:
        JSON response with the claims
    """
    return claims_api.get_claim_data(request)


@functions_framework.http
def test_claims_connection(request):
    """HTTP-triggered function to check Claims API credentials.

    Args:
        request: HTTP request

    Returns:
        JSON response with a success flag
    """
    return claims_api.test_claims_connection(request)
