from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from time import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Generator,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
)
import logging

import sentry_sdk
from aiohttp import ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy
from yarl import URL

from social.coves.client.app.metrics import MetricsClient

RequestFunc = Callable[..., Awaitable[ClientResponse]]
TokenGetter = Callable[[], Awaitable[Optional[str]]]
TokenRefresher = Callable[[], Awaitable[bool]]
SignOutHandler = Callable[[], Awaitable[None]]

REFRESH_PATH = "/oauth/refresh"

logger = logging.getLogger(__name__)


class _LoggerStub(Protocol):
    """_Logger defines which methods logger object should have."""

    @abstractmethod
    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass

    @abstractmethod
    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass

    @abstractmethod
    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass


_LoggerType = Union[_LoggerStub, logging.Logger]


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    trace_request_ctx: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    """Per-request flags shared between middlewares, never sent on the wire."""

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers) if request.headers is not None else None,
            trace_request_ctx=request.trace_request_ctx,
            kwargs=request.kwargs,
            extra=dict(request.extra),
        )

    @property
    def path(self) -> str:
        return URL(str(self.url)).path


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | list[Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            return ChainResponse(
                status=status, headers=headers, body=await response.json()
            )
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def body_contains(self, text: str) -> bool:
        if self.body is None:
            return False

        if isinstance(self.body, str):
            return text in self.body

        elif isinstance(self.body, bytes):
            return text.encode("utf-8") in self.body

        elif isinstance(self.body, dict):
            return text in self.body

        return False

    def body_matches_kv(self, key: str, value: Any) -> bool:
        if self.body is None:
            return False

        return (
            isinstance(self.body, dict) and key in self.body and self.body[key] == value
        )


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


def _unpack(
    response: NextChainResponseCallbackType,
) -> Tuple[ClientResponse, ChainResponse, Optional[ChainRequest]]:
    if len(response) == 3:
        return response[0], response[1], response[2]
    return response[0], response[1], None


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class StatsdMiddleware(RequestMiddlewareBase):
    """Records request timing and counts, and reports transport exceptions to Sentry."""

    def __init__(self, metrics_client: MetricsClient, prefix: str = "coves.client") -> None:
        super().__init__()
        self._metrics_client = metrics_client
        self._prefix = prefix

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        method = request.method.lower()
        status = "error"
        start_time = time()

        try:
            response = await next(request)
            status = str(response[1].status)
            return response
        except Exception as e:
            sentry_sdk.capture_exception(e)
            raise
        finally:
            self._metrics_client.timer(
                f"{self._prefix}.request.time",
                time() - start_time,
                tag_dict={"method": method},
            )
            self._metrics_client.increment(
                f"{self._prefix}.request.count",
                1,
                tag_dict={"method": method, "status": status},
            )


class BearerTokenMiddleware(RequestMiddlewareBase):
    """Sets the Authorization header from the current session on every attempt."""

    def __init__(self, token_getter: TokenGetter) -> None:
        super().__init__()
        self._token_getter = token_getter

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        token = await self._token_getter()

        if request.headers is None:
            request.headers = {}

        if token:
            request.headers[hdrs.AUTHORIZATION] = f"Bearer {token}"
        else:
            request.headers.pop(hdrs.AUTHORIZATION, None)

        return await next(request)


class RefreshOnUnauthorizedMiddleware(RequestMiddlewareBase):
    """
    Handles 401 responses by refreshing the session once and retrying once.

    A 401 from the refresh endpoint itself, a 401 on a request that was
    already retried, or a failed refresh all end in sign-out. The 401 response
    is then handed back to the caller unchanged.
    """

    def __init__(
        self,
        token_refresher: TokenRefresher,
        sign_out_handler: SignOutHandler,
    ) -> None:
        super().__init__()
        self._token_refresher = token_refresher
        self._sign_out_handler = sign_out_handler

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        client_response, chain_response, new_request = _unpack(await next(request))

        if chain_response.status != 401:
            if new_request is None:
                return client_response, chain_response
            return client_response, chain_response, new_request

        if request.path.endswith(REFRESH_PATH):
            logger.warning("Refresh endpoint returned 401, signing out")
            await self._sign_out_handler()
            return client_response, chain_response

        if request.extra.get("retried", False):
            logger.warning(
                f"Request to {request.path} still unauthorized after refresh, signing out"
            )
            await self._sign_out_handler()
            return client_response, chain_response

        logger.info(f"Request to {request.path} returned 401, refreshing session")
        refreshed = await self._token_refresher()

        if not refreshed:
            logger.warning("Session refresh failed, signing out")
            await self._sign_out_handler()
            return client_response, chain_response

        retry_request = ChainRequest.from_chain_request(request)
        retry_request.extra["retried"] = True
        return client_response, chain_response, retry_request


class EndOfLineChainMiddleware:
    def __init__(
        self,
        request_func: RequestFunc,
        logger: _LoggerType,
        raise_for_status: bool = False,
    ) -> None:
        super().__init__()
        self._request_func = request_func
        self._raise_for_status = raise_for_status
        self._logger = logger

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:

        self._logger.debug(f"Making request: {request.method} {request.url}")

        response: ClientResponse = await self._request_func(
            request.method.lower(),
            request.url,
            headers=request.headers,
            trace_request_ctx={
                **(request.trace_request_ctx or {}),
            },
            **(request.kwargs or {}),
        )

        if self._raise_for_status:
            response.raise_for_status()

        return response, await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        logger: _LoggerType,
        raise_for_status: bool = False,
        attempt_max: int = 2,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._logger = logger
        self._raise_for_status = raise_for_status

        self._chain_response: ChainResponse | None = None
        self._client_response: ClientResponse | None = None

        self._attempt_max = attempt_max

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        current_attempt = 0

        chain_request = self._chain_request

        while True:
            current_attempt += 1

            self._logger.debug(
                f"Attempt {current_attempt} out of {self._attempt_max}: {chain_request.method} {chain_request.url}"
            )

            client_response, chain_response, new_request = _unpack(
                await self._chain_callback(chain_request)
            )

            self._chain_response = chain_response
            self._client_response = client_response

            if new_request is None or current_attempt >= self._attempt_max:
                if self._raise_for_status:
                    client_response.raise_for_status()
                return client_response, chain_response

            client_response.release()
            chain_request = new_request

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._client_response is not None and not self._client_response.closed:
            self._client_response.close()


class ChainMiddlewareClient:
    def __init__(
        self,
        client_session: ClientSession | None = None,
        logger: _LoggerType | None = None,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        raise_for_status: bool = False,
        attempt_max: int = 2,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        if client_session is not None:
            client = client_session
            closed = None
        else:
            client = ClientSession(*args, **kwargs)
            closed = False

        self._middleware = middleware

        self._client = client
        self._closed = closed

        self._logger: _LoggerType = logger or logging.getLogger("aiohttp_chain")
        self._raise_for_status = raise_for_status
        self._attempt_max = attempt_max

    def request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=method,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def get(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_GET,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def post(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_POST,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    async def close(self) -> None:
        if self._closed is not None:
            await self._client.close()
            self._closed = True

    def _make_request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", {}),
            trace_request_ctx=kwargs.pop("trace_request_ctx", None),
            kwargs=kwargs,
        )

        if raise_for_status is None:
            raise_for_status = self._raise_for_status

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
            logger=self._logger,
            raise_for_status=False,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        full_middleware_chain = reversed(self._middleware or [])

        for mw in full_middleware_chain:
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            logger=self._logger,
            raise_for_status=raise_for_status,
            attempt_max=self._attempt_max,
        )

    async def __aenter__(self) -> "ChainMiddlewareClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def __del__(self) -> None:
        if getattr(self, "_closed", None) is None:
            # owned by someone else, or __init__ raised
            return

        if not self._closed:
            self._logger.warning("Chain middleware client was not closed")
