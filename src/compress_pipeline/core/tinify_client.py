"""Async client for the Tinify (TinyPNG) compression API."""

from typing import Any, Dict, Optional

import httpx

from .exceptions import (
    ClientError,
    InvalidCredentialError,
    QuotaExceededError,
    ServerError,
    ServiceConnectionError,
)
from .logging_config import get_logger
from .models import ConvertFormat, TransformOptions, TransformResult

API_ENDPOINT = "https://api.tinify.com"
PRESERVED_METADATA = ["copyright", "creation", "location"]


def build_output_options(
    options: TransformOptions, resize: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    JSON body for the output request.

    Keys are emitted in the order the service is asked to apply them:
    convert, then resize, then metadata preservation.
    """
    body: Dict[str, Any] = {}
    target = options.format_target
    if isinstance(target, ConvertFormat):
        body["convert"] = {"type": target.mime_type}
        if options.background:
            body["transform"] = {"background": options.background}
    if resize:
        body["resize"] = resize
    if options.preserve_metadata:
        body["preserve"] = list(PRESERVED_METADATA)
    return body


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        error = payload.get("error", "")
        message = payload.get("message", "")
        return f"{message} ({error})" if error and message else message or error
    return str(payload)


def raise_for_status(response: httpx.Response) -> None:
    """Translate an error response into the service error hierarchy."""
    status = response.status_code
    if status < 400:
        return
    message = _error_message(response)
    if status == 401:
        raise InvalidCredentialError(message, status=status)
    if status == 429:
        raise QuotaExceededError(message, status=status)
    if status < 500:
        raise ClientError(message, status=status)
    raise ServerError(message, status=status)


def _usage_count(response: httpx.Response) -> Optional[int]:
    header = response.headers.get("Compression-Count")
    if header is None:
        return None
    try:
        return int(header)
    except ValueError:
        return None


class TinifyClient:
    """
    Transform client speaking the Tinify HTTP API.

    One upload (``POST /shrink``) followed by one download of the result,
    either a plain ``GET`` or a ``POST`` carrying the output options. The
    usage counter comes from the ``Compression-Count`` response header.
    """

    def __init__(
        self,
        base_url: str = API_ENDPOINT,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._logger = get_logger("tinify-client")

    def _client(self, token: str, timeout: Optional[float]) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            auth=("api", token),
            timeout=timeout or self._timeout,
            transport=self._transport,
            headers={"User-Agent": "compress-pipeline/0.1.0"},
        )

    async def transform(
        self,
        data: bytes,
        options: TransformOptions,
        token: str,
        timeout: Optional[float] = None,
        resize: Optional[Dict[str, Any]] = None,
    ) -> TransformResult:
        """Compress ``data`` and apply ``options``; returns bytes and usage count."""
        try:
            async with self._client(token, timeout) as client:
                shrink = await client.post("/shrink", content=data)
                raise_for_status(shrink)

                location = shrink.headers.get("Location")
                if not location:
                    raise ServerError("Service response is missing the output location")

                body = build_output_options(options, resize)
                if body:
                    output = await client.post(location, json=body)
                else:
                    output = await client.get(location)
                raise_for_status(output)
        except httpx.TimeoutException as exc:
            raise ServiceConnectionError(f"Request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise ServiceConnectionError(f"Connection failed: {exc}") from exc

        usage = _usage_count(output)
        if usage is None:
            usage = _usage_count(shrink)
        if usage is None:
            raise ServerError("Service response is missing the compression count")

        self._logger.debug(
            f"Transformed {len(data)} -> {len(output.content)} bytes (usage={usage})"
        )
        return TransformResult(data=output.content, usage_count=usage)

    async def validate(self, token: str) -> int:
        """
        Check ``token`` with an empty upload.

        The service answers 400 (input missing) for a valid key and 401 for
        an invalid one. Returns the credential's current usage counter.
        """
        try:
            async with self._client(token, None) as client:
                response = await client.post("/shrink", content=b"")
        except httpx.TimeoutException as exc:
            raise ServiceConnectionError(f"Request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise ServiceConnectionError(f"Connection failed: {exc}") from exc

        if response.status_code not in (400, 201):
            raise_for_status(response)
        return _usage_count(response) or 0
