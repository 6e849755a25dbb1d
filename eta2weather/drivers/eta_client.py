from __future__ import annotations

import asyncio
import logging
import re
from typing import Dict, Iterable, List, Optional

import httpx

from ..core.cancel import CancelToken, guarded
from ..core.errors import Cancelled, NetworkError, ParseError
from ..core.timeutil import now_utc
from ..domain.models import Mode, TreeNode, VariableSample
from .eta_xml import parse_menu, parse_variable

logger = logging.getLogger(__name__)

# Raw values the controller uses for a pressed / released mode button
BUTTON_ON = "1803"
BUTTON_OFF = "1802"


class EtaClient:
    """HTTP client for the ETA boiler REST interface (``/user/menu``, ``/user/var``).

    At most one request per variable path is in flight: a new request for a
    path cancels the previous one first.
    """

    def __init__(
        self,
        host: str,
        timeout: float = 8.0,
        chunk_delay: float = 0.1,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._chunk_delay = chunk_delay
        self._client = httpx.AsyncClient(
            base_url=self._base_url(host),
            timeout=timeout,
            transport=transport,
        )
        self._inflight: Dict[str, CancelToken] = {}

    @staticmethod
    def _base_url(host: str) -> str:
        return f"http://{re.sub(r'^https?://', '', host).rstrip('/')}"

    def set_host(self, host: str) -> None:
        self._client.base_url = self._base_url(host)

    async def aclose(self) -> None:
        for tok in list(self._inflight.values()):
            tok.cancel()
        await self._client.aclose()

    def _claim(self, path: str, parent: Optional[CancelToken]) -> CancelToken:
        stale = self._inflight.get(path)
        if stale is not None:
            logger.debug("Superseding in-flight request for %s", path)
            stale.cancel()
        tok = CancelToken(parent)
        self._inflight[path] = tok
        return tok

    def _release(self, path: str, tok: CancelToken) -> None:
        if self._inflight.get(path) is tok:
            del self._inflight[path]

    async def _request(
        self,
        method: str,
        endpoint: str,
        token: Optional[CancelToken],
        data: Optional[Dict[str, str]] = None,
    ) -> str:
        try:
            resp = await guarded(token, self._client.request(method, endpoint, data=data))
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} {endpoint} failed: {e}") from e
        if not resp.is_success:
            raise NetworkError(f"{method} {endpoint}: HTTP error! Status: {resp.status_code}")
        return resp.text

    async def fetch_controller_tree(self, token: Optional[CancelToken] = None) -> List[TreeNode]:
        body = await self._request("GET", "/user/menu", token)
        nodes = parse_menu(body)
        if not nodes:
            raise ParseError("No ETA menu data received")
        return nodes

    async def fetch_variable(self, path: str, token: Optional[CancelToken] = None) -> VariableSample:
        tok = self._claim(path, token)
        try:
            body = await self._request("GET", f"/user/var/{path.lstrip('/')}", tok)
        finally:
            self._release(path, tok)
        return parse_variable(body, path, now_utc())

    async def fetch_leaf_variables(
        self,
        paths: Iterable[str],
        chunk_size: int = 5,
        concurrency: int = 1,
        token: Optional[CancelToken] = None,
    ) -> Dict[str, VariableSample]:
        """Fetch every path; failed paths are logged and left out of the result."""
        unique = list(dict.fromkeys(paths))
        size = max(1, chunk_size)
        chunks = [unique[i:i + size] for i in range(0, len(unique), size)]
        results: Dict[str, VariableSample] = {}
        gate = asyncio.Semaphore(max(1, concurrency))

        async def fetch_one(path: str) -> None:
            try:
                results[path] = await self.fetch_variable(path, token)
            except Cancelled:
                if token is not None and token.cancelled:
                    raise
                logger.debug("Request for %s superseded", path)
            except (NetworkError, ParseError) as e:
                logger.warning("Failed to fetch data for URI %s: %s", path, e)

        async def run_chunk(index: int, chunk: List[str]) -> None:
            async with gate:
                await asyncio.gather(*(fetch_one(p) for p in chunk))
                if index < len(chunks) - 1:
                    # keep the controller's small web server breathing
                    await guarded(token, asyncio.sleep(self._chunk_delay))

        await asyncio.gather(*(run_chunk(i, c) for i, c in enumerate(chunks)))
        logger.info("Fetched ETA data for %d/%d URIs", len(results), len(unique))
        return results

    async def write_actuator_position(
        self, path: str, scaled_value: int, token: Optional[CancelToken] = None
    ) -> None:
        tok = self._claim(path, token)
        try:
            logger.info("Setting user var %s to %s", path, scaled_value)
            await self._request(
                "POST",
                f"/user/var/{path.lstrip('/')}",
                tok,
                data={"value": str(scaled_value), "begin": "0", "end": "0"},
            )
        finally:
            self._release(path, tok)

    async def write_mode(
        self, target: Mode, buttons: Dict[Mode, str], token: Optional[CancelToken] = None
    ) -> None:
        """Release every other mode button, then press the target."""
        if target not in buttons:
            raise ValueError(f"No variable path known for mode button {target.value}")
        others = [path for mode, path in buttons.items() if mode != target]
        await asyncio.gather(*(self.write_actuator_position(p, int(BUTTON_OFF), token) for p in others))
        await self.write_actuator_position(buttons[target], int(BUTTON_ON), token)
        logger.info("Updated all button states (%s activated)", target.value)
