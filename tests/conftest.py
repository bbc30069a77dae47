import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from werkzeug.test import EnvironBuilder
from werkzeug.wrappers import Request

FUNCTION_DIR = Path(__file__).resolve().parents[1] / "servicepower"
if str(FUNCTION_DIR) not in sys.path:
    sys.path.insert(0, str(FUNCTION_DIR))

from servicepower_config import Credentials, ServicePowerConfig


def make_request(method="GET", query=None, json_body=None):
    """Build a request like the one functions_framework hands to a function."""
    builder = EnvironBuilder(method=method, query_string=query, json=json_body)
    try:
        return Request(builder.get_environ())
    finally:
        builder.close()


def fake_session(status_code=200, text=""):
    """requests.Session stand-in returning a single canned response."""
    session = MagicMock()
    session.post.return_value = MagicMock(status_code=status_code, text=text)
    return session


@pytest.fixture
def config() -> ServicePowerConfig:
    return ServicePowerConfig(user_id="cfg-user", password="cfg-secret-99")


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(user_id="met11106", password="B314@ezp!!", svcr_acct="met11106")
