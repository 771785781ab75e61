"""HTTP transport for sending change batches to the backend.

Handles request signing, retry of server errors and the response metadata
carrying the server clock and rotated authentication tokens.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from ..config import BackendConfig

logger = logging.getLogger(__name__)


class FailureKind(Enum):
    """Kind of a failed request."""

    NOT_CONFIGURED = "not_configured"
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP = "http"
    INVALID_RESPONSE = "invalid_response"


@dataclass
class TransportResult:
    """Result of a request.

    Server time and tokens are filled whenever a response was received,
    including error responses.
    """

    ok: bool
    data: dict[str, Any] = field(default_factory=dict)
    status_code: int | None = None
    server_time: float | None = None
    tokens: dict[str, str] = field(default_factory=dict)
    failure: FailureKind | None = None
    error: str | None = None


class Transport:
    """Sends change batches to the backend."""

    def __init__(
        self,
        config: BackendConfig,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the transport.

        Args:
            config: Backend URL, identifiers and tokens.
            http_transport: Optional httpx transport (used by tests).
        """
        self.config = config
        self.data_token = config.data_token
        self.file_token = config.file_token
        self._http_transport = http_transport

    def signature(self, token: str) -> str:
        """Sign a request without sending the token itself."""
        cfg = self.config
        raw = f"{cfg.user_id}{cfg.assessment_id}{cfg.context_id}{token}"
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    def request_params(self, token: str) -> dict[str, str]:
        return {
            "user_id": self.config.user_id,
            "ass_id": self.config.assessment_id,
            "context_id": self.config.context_id,
            "signature": self.signature(token),
        }

    def apply_tokens(self, tokens: dict[str, str]) -> None:
        """Use rotated tokens for the next requests."""
        if tokens.get("data"):
            self.data_token = tokens["data"]
        if tokens.get("file"):
            self.file_token = tokens["file"]

    def _read_metadata(self, response: httpx.Response, result: TransportResult) -> None:
        cfg = self.config
        server_time = response.headers.get(cfg.server_time_header)
        if server_time:
            try:
                result.server_time = float(server_time)
            except ValueError:
                logger.warning(f"Ignoring invalid server time '{server_time}'")

        if data_token := response.headers.get(cfg.data_token_header):
            result.tokens["data"] = data_token
        if file_token := response.headers.get(cfg.file_token_header):
            result.tokens["file"] = file_token

    async def send(self, batch: dict[str, list[dict[str, Any]]]) -> TransportResult:
        """Send a batch of changes, retrying server errors.

        Never raises for network, timeout or HTTP failures; they are
        reported in the result.
        """
        if not self.config.url:
            return TransportResult(
                ok=False,
                failure=FailureKind.NOT_CONFIGURED,
                error="No backend URL configured",
            )

        url = f"{self.config.url.rstrip('/')}{self.config.changes_path}"
        attempts = max(1, self.config.retry_max_attempts)
        backoff = 1.0
        result = TransportResult(ok=False)

        async with httpx.AsyncClient(
            timeout=self.config.timeout_seconds,
            transport=self._http_transport,
        ) as client:
            for attempt in range(attempts):
                result = TransportResult(ok=False)
                try:
                    response = await client.put(
                        url,
                        json=batch,
                        params=self.request_params(self.data_token),
                    )
                except httpx.TimeoutException:
                    logger.warning(f"Request timeout, attempt {attempt + 1}/{attempts}")
                    result.failure = FailureKind.TIMEOUT
                    result.error = "Request timeout"
                except httpx.HTTPError as e:
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{attempts}: {e}"
                    )
                    result.failure = FailureKind.NETWORK
                    result.error = f"Connection failed: {e}"
                else:
                    result.status_code = response.status_code
                    self._read_metadata(response, result)

                    if response.status_code == 200:
                        try:
                            data = response.json()
                        except ValueError as e:
                            result.failure = FailureKind.INVALID_RESPONSE
                            result.error = f"Invalid JSON response: {e}"
                            return result
                        if not isinstance(data, dict):
                            result.failure = FailureKind.INVALID_RESPONSE
                            result.error = "Response is not an object"
                            return result
                        result.ok = True
                        result.data = data
                        return result

                    result.failure = FailureKind.HTTP
                    result.error = f"HTTP {response.status_code}: {response.text}"
                    if response.status_code < 500:
                        # Client error, don't retry
                        return result
                    logger.warning(
                        f"Server error {response.status_code}, "
                        f"attempt {attempt + 1}/{attempts}"
                    )

                # Exponential backoff
                if attempt < attempts - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        return result
