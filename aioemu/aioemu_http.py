"""
The network facade behind `http.get` / `http.post`.

Requests are submitted synchronously from guest code and resolved later as
asyncio tasks on the running loop; the guest never blocks. In mock mode a
response comes from `MockFixtures` after a short simulated latency; in real
mode it comes from httpx. Either way the completion callback runs on the
loop thread, so guest code is never re-entered concurrently.
"""

import asyncio
import itertools
import ssl
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from aioemu.aioemu_datatypes import ErrorKind, HttpExchange, HttpRequest, HttpResponse, Outcome, dbg
from aioemu.aioemu_mocks import MockFixtures

MODES = ("mock", "real")
DEFAULT_TIMEOUT = 30.0
DEFAULT_MOCK_LATENCY = 0.05


async def http_request(method: str, url: str, *, headers: Optional[Dict[str, str]] = None,
                       data: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT) -> Tuple[int, str, Dict[str, str]]:
    """
    Perform one HTTP exchange and return (status, body text, headers).

    Non-2xx statuses are returned, not raised: the widget decides what an
    error status means. Transport failures raise httpx exceptions.
    """
    body = data.encode("utf-8") if isinstance(data, str) else data
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        resp = await client.request(method.upper(), url, headers=dict(headers or {}), content=body)
        headers_map = {str(k).lower(): v for k, v in resp.headers.items()}
        return int(resp.status_code), resp.text, headers_map


def classify_transport_error(exc: BaseException) -> ErrorKind:
    """Map a transport exception (or anything it wraps) onto an ErrorKind."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        match current:
            case asyncio.TimeoutError() | httpx.TimeoutException():
                return ErrorKind.TIMEOUT
            case ssl.SSLError():
                return ErrorKind.TLS
            case ConnectionRefusedError():
                return ErrorKind.REFUSED
            case ConnectionResetError() | BrokenPipeError():
                return ErrorKind.RESET
            case httpx.UnsupportedProtocol() | httpx.InvalidURL():
                return ErrorKind.BLOCKED
        text = str(current).lower()
        if "name or service not known" in text or "nodename nor servname" in text \
                or "getaddrinfo" in text or "name resolution" in text:
            return ErrorKind.DNS
        if "certificate" in text or "ssl" in text or "tls" in text:
            return ErrorKind.TLS
        if "connection refused" in text:
            return ErrorKind.REFUSED
        if "connection reset" in text:
            return ErrorKind.RESET
        current = current.__cause__ or current.__context__
    return ErrorKind.GENERIC


_ERROR_MESSAGES = {
    ErrorKind.DNS: "DNS lookup failed",
    ErrorKind.REFUSED: "connection refused",
    ErrorKind.RESET: "connection reset by peer",
    ErrorKind.TLS: "TLS handshake failed",
    ErrorKind.TIMEOUT: "request timed out",
    ErrorKind.BLOCKED: "request blocked by the client",
    ErrorKind.GENERIC: "network error",
}


class NetworkFacade:
    """Issues widget HTTP requests and delivers their completions."""

    def __init__(self, fixtures: Optional[MockFixtures] = None, *, mode: str = "mock",
                 timeout: float = DEFAULT_TIMEOUT, mock_latency: float = DEFAULT_MOCK_LATENCY,
                 retries: int = 0, backoff: float = 0.2):
        self.fixtures = fixtures if fixtures is not None else MockFixtures()
        self._mode = "mock"
        self.set_mode(mode)
        self.timeout = timeout
        self.mock_latency = mock_latency
        self.retries = retries
        self.backoff = backoff
        self.pending: Dict[int, asyncio.Task] = {}
        self._owners: Dict[int, Any] = {}
        self._ids = itertools.count(1)
        self.history: List[HttpExchange] = []
        # Exceptions that escaped a completion callback; never raised to the loop.
        self.delivery_errors: List[BaseException] = []

    @property
    def mode(self) -> str:
        return self._mode

    def set_mode(self, mode: str) -> None:
        """Switch mode for requests submitted from now on; in-flight ones keep theirs."""
        if mode not in MODES:
            raise ValueError(f"unknown network mode {mode!r}; expected one of {', '.join(MODES)}")
        self._mode = mode

    def submit(self, request: HttpRequest, on_complete: Callable[[HttpResponse], None], *, owner: Any = None) -> int:
        """Schedule `request`; `on_complete(response)` runs once it resolves.

        Must be called with an asyncio loop running (RuntimeError otherwise).
        """
        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        exchange = HttpExchange(request_id, request, self._mode)
        self.history.append(exchange)
        task = loop.create_task(self._run(exchange, on_complete))
        self.pending[request_id] = task
        if owner is not None:
            self._owners[request_id] = owner
        dbg("submit", request_id, request.method, request.url, exchange.mode)
        return request_id

    async def _run(self, exchange: HttpExchange, on_complete: Callable[[HttpResponse], None]) -> None:
        try:
            try:
                exchange.response = await self.resolve(exchange.request, exchange.mode)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                dbg("resolve failed", exchange.request_id, e)
                exchange.response = self._failure(exchange.mode, e)
            try:
                on_complete(exchange.response)
            except Exception as e:
                dbg("delivery failed", exchange.request_id, e)
                self.delivery_errors.append(e)
        finally:
            # Popped after delivery so requests made inside the callback are
            # already pending when settle() next looks.
            self.pending.pop(exchange.request_id, None)
            self._owners.pop(exchange.request_id, None)

    @staticmethod
    def _failure(mode: str, exc: BaseException) -> HttpResponse:
        """A request that could not be resolved still completes, as (nil, 0)."""
        detail = str(exc) or type(exc).__name__
        if mode == "real":
            kind = classify_transport_error(exc)
            return HttpResponse(None, 0, Outcome.REAL_ERROR, error_kind=kind,
                                error_message=f"{_ERROR_MESSAGES[kind]}: {detail}")
        return HttpResponse(None, 0, Outcome.MOCK_ERROR, error_kind=ErrorKind.GENERIC,
                            error_message=f"mock fixture failed: {type(exc).__name__}: {detail}")

    async def resolve(self, request: HttpRequest, mode: Optional[str] = None) -> HttpResponse:
        if (mode or self._mode) == "real":
            return await self._resolve_real(request)
        return await self._resolve_mock(request)

    async def _resolve_mock(self, request: HttpRequest) -> HttpResponse:
        match = self.fixtures.lookup(request.url)
        delay = self.mock_latency
        if match is not None and match.fixture.delay is not None:
            delay = match.fixture.delay
        if delay > 0:
            await asyncio.sleep(delay)
        else:
            await asyncio.sleep(0)
        if match is None:
            return HttpResponse(None, 404, Outcome.MOCK_MISS, available_keys=self.fixtures.keys())
        if match.ambiguous:
            dbg("ambiguous mock match for", request.url, "candidates:", match.candidates)
        fixture = match.fixture
        return HttpResponse(
            fixture.body_text(),
            fixture.status,
            Outcome.MOCK_HIT,
            headers=dict(fixture.headers),
            fixture_key=match.key,
            available_keys=match.candidates,
        )

    async def _resolve_real(self, request: HttpRequest) -> HttpResponse:
        last_exc: Optional[BaseException] = None
        for attempt in range(self.retries + 1):
            try:
                status, text, headers = await asyncio.wait_for(
                    http_request(request.method, request.url, headers=request.headers,
                                 data=request.body, timeout=self.timeout),
                    timeout=self.timeout,
                )
                return HttpResponse(text, status, Outcome.REAL_SUCCESS, headers=headers)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_exc = e
                if attempt < self.retries:
                    await asyncio.sleep(self.backoff * (2 ** attempt))
                    continue
        return self._failure("real", last_exc)

    async def settle(self, timeout: Optional[float] = None) -> bool:
        """Wait until nothing is pending, including requests made by callbacks.

        Returns False if `timeout` seconds pass first; outstanding requests are
        left running.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self.pending:
            remaining = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return False
            tasks = list(self.pending.values())
            await asyncio.wait(tasks, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            # Let finished tasks run their finally blocks.
            await asyncio.sleep(0)
        return True

    def cancel(self, owner: Any = None) -> int:
        """Cancel pending requests (all, or only those submitted for `owner`)."""
        cancelled = 0
        for request_id, task in list(self.pending.items()):
            if owner is not None and self._owners.get(request_id) is not owner:
                continue
            task.cancel()
            self.pending.pop(request_id, None)
            self._owners.pop(request_id, None)
            cancelled += 1
        return cancelled

    def outstanding(self) -> List[HttpExchange]:
        return [ex for ex in self.history if ex.request_id in self.pending]
