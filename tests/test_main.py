import re
from pathlib import Path

import main
from conftest import make_request


def test_entry_points_answer_preflight_requests():
    for entry_point in (
        main.get_service_power_data,
        main.test_soap_connection,
        main.test_connection,
        main.get_claim_data,
        main.test_claims_connection,
    ):
        body, status, headers = entry_point(make_request("OPTIONS"))

        assert status == 204
        assert body == ""
        assert headers["Access-Control-Allow-Origin"] == "*"


def test_missing_credentials_without_deployment_config(monkeypatch):
    for name in ("SP_USER_ID", "SP_PASSWORD", "SP_CONFIG_FILE", "SP_CONFIG_BUCKET"):
        monkeypatch.delenv(name, raising=False)

    body, status, _ = main.get_claim_data(make_request())

    assert status == 400
    assert body["error"] == "Missing credentials"


def test_entry_module_is_installed_with_the_package():
    pyproject = Path(__file__).resolve().parent.parent / "pyproject.toml"
    modules = re.search(r"py-modules = \[(.*?)\]", pyproject.read_text(encoding="utf-8"), re.S).group(1)

    assert '"main"' in modules
    for name in re.findall(r'"(\w+)"', modules):
        assert (Path(main.__file__).parent / f"{name}.py").exists()
