"""MCP client for a remote feature-extraction service.

The embedding model runs out of process behind its own MCP server. This
client sends the image as base64 to its ``extract_features`` tool and bounds
every call with a timeout so a stuck model never hangs a verification.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any

from mediguard.core.errors import ExtractionError, ExtractorUnavailableError

logger = logging.getLogger(__name__)


class ExtractorMCPClient:
    """FeatureExtractor backed by an MCP tool call.

    Usage::

        from fastmcp import Client
        extractor = ExtractorMCPClient(Client("http://127.0.0.1:8003/mcp"), timeout_s=15)
        vector = await extractor.extract(image_bytes)

    Expected tool response::

        {"status": "ok", "model_version": "mobilenet_v2", "vector": [0.12, ...]}
        {"status": "error", "error": {"code": "undecodable_image", "message": "..."}}
    """

    def __init__(
        self,
        mcp_client: Any,
        *,
        timeout_s: float = 15.0,
        tool_name: str = "extract_features",
    ) -> None:
        """Initialise with a fastmcp.Client (or compatible)."""
        self._client = mcp_client
        self._timeout_s = timeout_s
        self._tool_name = tool_name
        self._model_version = "unknown"

    @property
    def model_version(self) -> str:
        return self._model_version

    async def extract(self, image_bytes: bytes, *, augment: bool = False) -> list[float]:
        if not image_bytes:
            raise ExtractionError("Image is empty")

        args = {
            "image_base64": base64.b64encode(image_bytes).decode("ascii"),
            "augment": augment,
        }
        parsed = await self._call_tool(args)

        vector = parsed.get("vector")
        if not isinstance(vector, list) or not vector:
            raise ExtractionError(f"No feature vector in response from {self._tool_name}")
        try:
            floats = [float(v) for v in vector]
        except (TypeError, ValueError) as exc:
            raise ExtractionError(f"Non-numeric feature vector: {exc}") from exc

        version = parsed.get("model_version")
        if isinstance(version, str) and version:
            self._model_version = version
        return floats

    async def health_check(self) -> dict[str, Any]:
        """Verify the extraction service is reachable."""
        async with self._client:
            result = await asyncio.wait_for(
                self._client.call_tool("health_check", {}), timeout=self._timeout_s
            )
        payload = _extract_payload(result)
        if isinstance(payload, str):
            payload = json.loads(payload)
        return payload if isinstance(payload, dict) else {"status": "unknown"}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _call_tool(self, arguments: dict[str, Any]) -> dict[str, Any]:
        logger.debug("Calling extractor tool %s", self._tool_name)
        try:
            async with self._client:
                result = await asyncio.wait_for(
                    self._client.call_tool(self._tool_name, arguments),
                    timeout=self._timeout_s,
                )
        except asyncio.TimeoutError:
            logger.warning("Extractor tool %s timed out after %.1fs", self._tool_name, self._timeout_s)
            raise ExtractorUnavailableError(
                f"Feature extractor timed out after {self._timeout_s}s"
            ) from None
        except Exception:
            logger.exception("Failed to call extractor tool %s", self._tool_name)
            raise ExtractorUnavailableError(
                f"Failed to call feature extractor tool '{self._tool_name}'. "
                "Is the extraction server running?"
            ) from None

        payload = _extract_payload(result)
        if payload is None:
            raise ExtractorUnavailableError(f"Empty response from {self._tool_name}")

        if isinstance(payload, str):
            try:
                parsed: Any = json.loads(payload)
            except (json.JSONDecodeError, TypeError) as exc:
                raise ExtractorUnavailableError(
                    f"Invalid JSON from {self._tool_name}: {exc}"
                ) from exc
        else:
            parsed = payload

        if not isinstance(parsed, dict):
            raise ExtractorUnavailableError(
                f"Expected JSON object from {self._tool_name}, got {type(parsed).__name__}"
            )

        if parsed.get("status") == "error":
            raise ExtractionError(f"Feature extraction failed: {_format_error(parsed.get('error'))}")

        return parsed


def _extract_payload(result: Any) -> Any | None:
    """Pull the JSON payload out of a fastmcp tool result.

    Accepts a raw dict or string, a ``CallToolResult`` with ``structured_content``
    or ``content``, or a list of content blocks (``.text`` / ``.data``).
    """
    if result is None:
        return None
    if isinstance(result, (dict, str)):
        return result

    structured = getattr(result, "structured_content", None)
    if isinstance(structured, dict):
        return structured

    blocks = getattr(result, "content", result)
    if not isinstance(blocks, list):
        blocks = [blocks]
    for block in blocks:
        if isinstance(block, dict):
            if "data" in block:
                return block["data"]
            if "text" in block:
                return block["text"]
            continue
        data = getattr(block, "data", None)
        if data is not None:
            return data
        text = getattr(block, "text", None)
        if text is not None:
            return text
        if isinstance(block, str):
            return block
    return None


def _format_error(error: Any) -> str:
    if error is None:
        return "Unknown error"
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        msg = error.get("message") or error.get("code")
        return msg if isinstance(msg, str) and msg else str(error)
    return str(error)
