"""Tests for the relayer HTTP client."""

import httpx
import pytest
from fastapi.testclient import TestClient

from velo.api.routes import create_app
from velo.core.commitment import Note
from velo.core.pools import PoolSize
from velo.crypto.keys import Keypair
from velo.crypto.stealth import StealthKeys
from velo.exceptions import MalformedNote, NullifierAlreadySpent, RelayerUnavailable, VeloError
from velo.relayer.client import RelayerClient, error_from_response


@pytest.fixture
def relayer(service, settings):
    app = create_app(service=service, settings=settings)
    return RelayerClient(base_url="http://testserver", client=TestClient(app), sleep=lambda _: None)


def mock_client(responses):
    """httpx client that replays (status, body) pairs and records requests."""
    seen = []

    def handler(request):
        seen.append(request)
        status, body = responses[min(len(seen), len(responses)) - 1]
        if isinstance(body, Exception):
            raise body
        return httpx.Response(status, json=body)

    client = httpx.Client(base_url="http://relayer.test", transport=httpx.MockTransport(handler))
    return client, seen


class TestAgainstApp:

    def test_read_endpoints(self, relayer, service):
        assert relayer.health()["relayer"] == service.address
        assert relayer.info()["feeBps"] == 50
        assert relayer.estimate_fee(PoolSize.SMALL)["fee"] == 500_000
        assert len(relayer.pools()["pools"]) == 3

    def test_relay_withdraw(self, relayer, ledger, deposit):
        recipient = Keypair.generate().address
        result = relayer.relay_withdraw(deposit(PoolSize.SMALL), recipient)
        assert result["success"] is True
        assert ledger.balance(recipient) == result["recipientAmount"]

    def test_relay_stealth(self, relayer, deposit):
        result = relayer.relay_stealth(deposit(PoolSize.SMALL), StealthKeys.generate().meta_address.encode())
        assert result["stealthAddress"]

    def test_typed_errors(self, relayer, deposit):
        note = deposit(PoolSize.SMALL)
        deposit(PoolSize.SMALL)
        relayer.relay_withdraw(note, Keypair.generate().address)
        with pytest.raises(NullifierAlreadySpent):
            relayer.relay_withdraw(note, Keypair.generate().address)
        with pytest.raises(MalformedNote):
            relayer.relay_withdraw(Note.generate(PoolSize.SMALL), Keypair.generate().address)


class TestRetries:

    def test_retries_unavailable_then_succeeds(self):
        client, seen = mock_client([(503, {"error": "busy"}), (502, {}), (200, {"status": "ok"})])
        delays = []
        relayer = RelayerClient(client=client, sleep=delays.append, backoff=0.5)

        assert relayer.health() == {"status": "ok"}
        assert len(seen) == 3
        assert delays == [0.5, 1.0]

    def test_gives_up(self):
        client, seen = mock_client([(503, {"error": "busy"})])
        relayer = RelayerClient(client=client, sleep=lambda _: None, max_retries=2)
        with pytest.raises(RelayerUnavailable):
            relayer.info()
        assert len(seen) == 3

    def test_transport_error(self):
        client, seen = mock_client([(0, httpx.ConnectError("refused"))])
        relayer = RelayerClient(client=client, sleep=lambda _: None, max_retries=1)
        with pytest.raises(RelayerUnavailable, match="Cannot reach"):
            relayer.health()
        assert len(seen) == 2

    def test_domain_errors_not_retried(self):
        client, seen = mock_client([(409, {"error": "spent", "code": "NullifierAlreadySpent"})])
        relayer = RelayerClient(client=client, sleep=lambda _: None)
        with pytest.raises(NullifierAlreadySpent, match="spent"):
            relayer.relay_withdraw(Note.generate(PoolSize.SMALL), Keypair.generate().address)
        assert len(seen) == 1

    def test_token_header(self):
        client, seen = mock_client([(200, {})])
        RelayerClient(client=client, token="abc").health()
        assert seen[0].headers["Authorization"] == "Bearer abc"


class TestErrorFromResponse:

    def test_unknown_code(self):
        error = error_from_response(httpx.Response(400, json={"error": "bad", "code": "ValidationError"}))
        assert type(error) is VeloError
        assert str(error) == "bad"

    def test_non_error_attribute_is_ignored(self):
        error = error_from_response(httpx.Response(400, json={"error": "bad", "code": "List"}))
        assert type(error) is VeloError

    def test_non_json_body(self):
        error = error_from_response(httpx.Response(500, text="oops"))
        assert "HTTP 500" in str(error)
