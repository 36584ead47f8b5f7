from unittest.mock import MagicMock

import pytest
import requests

from finsync.api import (
    APIClient, AuthenticationError, NetworkError, ValidationError, normalise_base_url,
)
from finsync.auth import AuthSession


# --- Helper Functions ---

def create_mock_response(status_code=200, json_data=None, text_data=""):
    """Creates a mock requests.Response object."""
    mock_resp = MagicMock()
    mock_resp.status_code = status_code
    mock_resp.text = text_data
    if json_data is None and not text_data:
        mock_resp.content = b""
        mock_resp.json.side_effect = ValueError("No JSON")
    else:
        mock_resp.content = b"body"
        if json_data is None:
            mock_resp.json.side_effect = ValueError("No JSON")
        else:
            mock_resp.json.return_value = json_data
    return mock_resp


# --- Fixtures ---

@pytest.fixture
def session_auth():
    return AuthSession("secret-token", "user-1")


@pytest.fixture
def client(session_auth):
    return APIClient(session_auth, base_url="https://finance.example.com/api/", backoff=0)


@pytest.fixture
def mock_request(mocker):
    return mocker.patch.object(requests.Session, "request")


# --- Tests ---

def test_normalise_base_url():
    assert normalise_base_url("https://x.test/api") == "https://x.test"
    assert normalise_base_url("https://x.test/api/") == "https://x.test"
    assert normalise_base_url("https://x.test/") == "https://x.test"


def test_create_sends_bearer_token_and_normalises_id(client, mock_request):
    mock_request.return_value = create_mock_response(201, {"_id": "65a1", "name": "Acme", "__v": 0})

    created = client.create("clients", {"name": "Acme"})

    assert created == {"remoteId": "65a1", "name": "Acme"}
    args, kwargs = mock_request.call_args
    assert args == ("POST", "https://finance.example.com/api/clients")
    assert kwargs["json"] == {"name": "Acme"}
    assert kwargs["headers"]["Authorization"] == "Bearer secret-token"


def test_fetch_all_uses_resource_path(client, mock_request):
    mock_request.return_value = create_mock_response(200, [{"_id": "a"}, {"_id": "b"}])

    docs = client.fetch_all("savingsTransactions")

    assert [d["remoteId"] for d in docs] == ["a", "b"]
    assert mock_request.call_args[0][1] == "https://finance.example.com/api/savings-transactions"


def test_update_and_delete_target_the_remote_id(client, mock_request):
    mock_request.return_value = create_mock_response(200, {"_id": "65a1", "name": "New"})
    client.update("clients", "65a1", {"name": "New"})
    assert mock_request.call_args[0] == ("PUT", "https://finance.example.com/api/clients/65a1")

    mock_request.return_value = create_mock_response(204)
    assert client.delete("clients", "65a1") is None
    assert mock_request.call_args[0] == ("DELETE", "https://finance.example.com/api/clients/65a1")


def test_unauthorised_invalidates_session(client, session_auth, mock_request):
    mock_request.return_value = create_mock_response(401, {"error": "Invalid token"})
    reasons = []
    session_auth.on_invalidated(reasons.append)

    with pytest.raises(AuthenticationError) as excinfo:
        client.fetch_all("clients")

    assert excinfo.value.status == 401
    assert mock_request.call_count == 1
    assert not session_auth.is_authenticated
    assert session_auth.user_id is None
    assert len(reasons) == 1


def test_request_without_token_sends_no_auth_header(mock_request):
    mock_request.return_value = create_mock_response(200, [])
    APIClient(AuthSession(), base_url="https://x.test", backoff=0).fetch_all("clients")
    assert "Authorization" not in mock_request.call_args[1]["headers"]


def test_client_error_is_not_retried(client, mock_request):
    mock_request.return_value = create_mock_response(400, {"error": "amount is required"})

    with pytest.raises(ValidationError) as excinfo:
        client.create("income", {})

    assert str(excinfo.value) == "amount is required"
    assert excinfo.value.status == 400
    assert mock_request.call_count == 1


def test_server_error_is_retried(client, mock_request):
    mock_request.side_effect = [
        create_mock_response(503, text_data="Service Unavailable"),
        create_mock_response(200, [{"_id": "a"}]),
    ]

    docs = client.fetch_all("clients")

    assert docs == [{"remoteId": "a"}]
    assert mock_request.call_count == 2


def test_timeouts_exhaust_retries(client, mock_request):
    mock_request.side_effect = requests.exceptions.Timeout()

    with pytest.raises(NetworkError):
        client.fetch_all("clients")

    assert mock_request.call_count == 3


def test_migrate_posts_full_dataset(client, mock_request):
    summary = {"success": True, "details": {"clients": {"imported": 1, "errors": []}}}
    mock_request.return_value = create_mock_response(200, summary)

    result = client.migrate({"clients": [{"id": 1, "name": "Acme"}]})

    assert result == summary
    assert mock_request.call_args[0] == ("POST", "https://finance.example.com/api/migration/upload")


def test_is_online(client, mock_request):
    mock_request.return_value = create_mock_response(200, {"status": "ok"})
    assert client.is_online()

    mock_request.side_effect = requests.exceptions.ConnectionError()
    assert not client.is_online()
