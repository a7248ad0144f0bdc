"""Interceptors applied around every cache operation.

The chain is built once at startup from an ordered list; the first entry is
the outermost. Each interceptor gets ``before``, ``after`` and ``on_fault``
hooks around the rest of the chain.
"""
import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from fastapi import HTTPException, Request
from fastapi.responses import PlainTextResponse
from fastapi.security import HTTPBasic

from nix_stored.app.errors import AuthMalformed, NixStoredError
from nix_stored.app.services.auth_policy import AuthenticationPolicy

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Any]]


@dataclass
class OperationCall:
    operation_id: str
    request: Request
    params: Dict[str, Any] = field(default_factory=dict)


class Interceptor:
    async def before(self, call: OperationCall) -> None:
        pass

    async def after(self, call: OperationCall, response: Any) -> Any:
        return response

    async def on_fault(self, call: OperationCall, exc: Exception) -> Optional[Any]:
        """Return a replacement response, or None to let ``exc`` propagate."""
        return None


class RecoveryInterceptor(Interceptor):
    """Turns unexpected exceptions into a generic 500."""

    async def on_fault(self, call: OperationCall, exc: Exception) -> Optional[Any]:
        if isinstance(exc, (HTTPException, NixStoredError)):
            return None
        logger.error(
            f"Unhandled fault in {call.operation_id}: {exc!r}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        return PlainTextResponse("Internal Server Error", status_code=500)


class AuthInterceptor(Interceptor):
    def __init__(self, policy: AuthenticationPolicy):
        self.policy = policy
        self._basic = HTTPBasic(auto_error=False)

    async def before(self, call: OperationCall) -> None:
        if not self.policy.requires_credentials(call.operation_id):
            return
        try:
            credentials = await self._basic(call.request)
        except HTTPException as e:
            raise AuthMalformed("Corrupt Basic authorization header") from e
        self.policy.authorize(call.operation_id, credentials)


class RequestLogInterceptor(Interceptor):
    async def before(self, call: OperationCall) -> None:
        logger.debug(
            f"REST API called: {call.operation_id} "
            f"{call.request.method} {call.request.url.path} {call.params}"
        )


class InterceptorChain:
    def __init__(self, interceptors: Sequence[Interceptor]):
        self._interceptors: List[Interceptor] = list(interceptors)

    @property
    def interceptors(self) -> List[Interceptor]:
        return list(self._interceptors)

    def wrap(self, operation_id: str, handler: Handler) -> Handler:
        """Wrap ``handler`` so every call runs through the chain.

        The handler must accept a ``request`` parameter. The wrapper keeps the
        handler's signature, so FastAPI resolves parameters as usual.
        """

        @functools.wraps(handler)
        async def wrapped(**kwargs):
            request = kwargs["request"]
            request.state.operation_id = operation_id
            params = {k: v for k, v in kwargs.items() if k != "request"}
            call = OperationCall(operation_id, request, params)
            return await self._invoke(0, call, handler, kwargs)

        return wrapped

    async def _invoke(self, index: int, call: OperationCall, handler: Handler, kwargs: Dict[str, Any]) -> Any:
        if index == len(self._interceptors):
            return await handler(**kwargs)

        interceptor = self._interceptors[index]
        try:
            await interceptor.before(call)
            response = await self._invoke(index + 1, call, handler, kwargs)
        except Exception as exc:
            replacement = await interceptor.on_fault(call, exc)
            if replacement is None:
                raise
            return replacement
        return await interceptor.after(call, response)


def default_chain(policy: AuthenticationPolicy) -> InterceptorChain:
    return InterceptorChain([
        RecoveryInterceptor(),
        AuthInterceptor(policy),
        RequestLogInterceptor(),
    ])
