"""HTTP client for a Velo relayer."""

import logging
import time
from typing import Callable, Dict, Optional

import httpx

from velo import exceptions
from velo.core.commitment import Note
from velo.core.pools import PoolSize
from velo.exceptions import RelayerUnavailable, VeloError
from velo.proving.backend import ProofBundle
from velo.utils.encoding import b58encode

logger = logging.getLogger(__name__)


def error_from_response(response: httpx.Response) -> VeloError:
    """Rebuild the typed error a relayer reported in its failure body."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    message = body.get("error") or f"Relayer returned HTTP {response.status_code}"
    error_cls = getattr(exceptions, str(body.get("code")), None)
    if response.status_code >= 502:
        return RelayerUnavailable(message)
    if isinstance(error_cls, type) and issubclass(error_cls, VeloError):
        return error_cls(message)
    return VeloError(message)


def note_request(note: Note) -> Dict:
    """The note-opening fields shared by both relay requests."""
    return {
        "noteCommitment": note.commitment_hex,
        "nullifier": b58encode(note.nullifier),
        "secret": b58encode(note.secret),
        "poolSize": note.pool.value,
    }


class RelayerClient:
    """
    Talks to a relayer over HTTP and raises the relayer's own error kinds.

    Transport failures and 5xx gateway errors surface as RelayerUnavailable
    and are retried with exponential backoff up to `max_retries` times; every
    other error is raised on the first response.
    """

    def __init__(self, base_url: str = "http://localhost:8000", token: Optional[str] = None,
                 max_retries: int = 3, backoff: float = 0.5, timeout: float = 120.0,
                 client: Optional[httpx.Client] = None, sleep: Callable[[float], None] = time.sleep):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.backoff = backoff
        self._sleep = sleep
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        if client is None:
            client = httpx.Client(base_url=self.base_url, timeout=timeout)
        client.headers.update(headers)
        self._client = client

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "RelayerClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, path: str, payload: Optional[Dict] = None) -> Dict:
        attempt = 0
        while True:
            try:
                try:
                    response = self._client.request(method, path, json=payload)
                except httpx.TransportError as e:
                    raise RelayerUnavailable(f"Cannot reach relayer at {self.base_url}: {e}") from e
                if response.is_success:
                    return response.json()
                raise error_from_response(response)
            except RelayerUnavailable as e:
                if attempt >= self.max_retries:
                    raise
                delay = self.backoff * (2 ** attempt)
                attempt += 1
                logger.warning(f"{e}; retry {attempt}/{self.max_retries} in {delay:.1f}s")
                self._sleep(delay)

    # Read-only
    def health(self) -> Dict:
        return self._request("GET", "/health")

    def info(self) -> Dict:
        return self._request("GET", "/info")

    def pools(self) -> Dict:
        return self._request("GET", "/pools")

    def estimate_fee(self, pool: PoolSize) -> Dict:
        return self._request("POST", "/estimate-fee", {"poolSize": PoolSize(pool).value})

    # Relay
    def relay_withdraw(self, note: Note, recipient: str, proof: Optional[ProofBundle] = None) -> Dict:
        payload = note_request(note)
        payload["recipient"] = recipient
        if proof is not None:
            payload["proof"] = proof.to_dict()
        return self._request("POST", "/relay/withdraw", payload)

    def relay_stealth(self, note: Note, recipient_stealth_meta: str) -> Dict:
        payload = note_request(note)
        payload["recipientStealthMeta"] = recipient_stealth_meta
        return self._request("POST", "/relay/stealth", payload)
