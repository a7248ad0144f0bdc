"""HTTP operations of the binary cache.

Each handler is registered under an operation id and wrapped by the
interceptor chain. Store components live on ``request.app.state``.
"""
import logging
from typing import Callable, List, NamedTuple

from fastapi import FastAPI, Request
from fastapi.responses import Response, StreamingResponse
from starlette.requests import ClientDisconnect

from nix_stored.app.errors import StoreIOError
from nix_stored.app.interceptors import InterceptorChain
from nix_stored.app.services.client_watch import ClientWatch
from nix_stored.app.services.limiter import Slot
from nix_stored.app.services.object_store import NarInfoKey, NarKey, ObjectKey, ObjectReader
from nix_stored.models.cache_info import NixCacheInfo

logger = logging.getLogger(__name__)

NARINFO_MEDIA_TYPE = "text/x-nix-narinfo"
NAR_MEDIA_TYPE = "application/x-nix-nar"


class ObjectResponse(StreamingResponse):
    """Streams a stored object, then closes it and frees its transfer slot.

    Streaming runs after the interceptor chain has returned, so failures are
    logged here with the operation id.
    """

    def __init__(self, reader: ObjectReader, slot: Slot, media_type: str, operation_id: str):
        super().__init__(
            reader.chunks(),
            media_type=media_type,
            headers={"content-length": str(reader.length)},
        )
        self.reader = reader
        self.slot = slot
        self.operation_id = operation_id

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        except Exception as e:
            logger.error(f"{self.operation_id}: streaming {self.reader.path} failed: {e!r}", exc_info=True)
            raise
        finally:
            self.slot.release()
            await self.reader.aclose()


async def _head(request: Request, key: ObjectKey) -> Response:
    if await request.app.state.object_store.exists(key):
        return Response(status_code=200)
    return Response(status_code=404)


async def _get(request: Request, key: ObjectKey, media_type: str) -> Response:
    # Slot first: a request that goes away while waiting never touches the file
    async with ClientWatch(request.receive).watching() as gone:
        slot = await request.app.state.limiter.acquire(gone)
    try:
        reader = await request.app.state.object_store.open_read(key)
    except BaseException:
        slot.release()
        raise
    return ObjectResponse(reader, slot, media_type, request.state.operation_id)


async def _put(request: Request, key: ObjectKey) -> Response:
    store = request.app.state.object_store
    watch = ClientWatch(request.receive)
    async with watch.watching() as gone:
        slot = await request.app.state.limiter.acquire(gone)
    try:
        upload = Request(request.scope, watch.receive)
        written = await store.write(key, upload.stream())
    except ClientDisconnect as e:
        path = store.path_for(key)
        logger.error(f"Upload to {path} aborted by the client")
        raise StoreIOError(path, e) from e
    finally:
        slot.release()
    logger.info(f"Stored {key} ({written} bytes)")
    return Response(status_code=201)


async def get_nix_cache_info(request: Request) -> NixCacheInfo:
    return NixCacheInfo()


async def does_nar_info_exist(request: Request, store_path_hash: str):
    return await _head(request, NarInfoKey(store_path_hash))


async def get_nar_info(request: Request, store_path_hash: str):
    return await _get(request, NarInfoKey(store_path_hash), NARINFO_MEDIA_TYPE)


async def put_nar_info(request: Request, store_path_hash: str):
    return await _put(request, NarInfoKey(store_path_hash))


async def does_nar_exist(request: Request, file_hash: str, compression: str):
    return await _head(request, NarKey(file_hash, compression))


async def get_nar(request: Request, file_hash: str, compression: str):
    return await _get(request, NarKey(file_hash, compression), NAR_MEDIA_TYPE)


async def put_nar(request: Request, file_hash: str, compression: str):
    return await _put(request, NarKey(file_hash, compression))


async def get_deriver_build_log(request: Request, deriver: str):
    # Only meaningful for caches hydrated from Hydra
    logger.warning(f"GetDeriverBuildLog called for {deriver}, not implemented")
    return Response(status_code=501)


async def get_nar_file_listing(request: Request, store_path_hash: str):
    logger.warning(f"GetNarFileListing called for {store_path_hash}, not implemented")
    return Response(status_code=501)


class Operation(NamedTuple):
    operation_id: str
    method: str
    path: str
    handler: Callable


OPERATIONS: List[Operation] = [
    Operation("GetNixCacheInfo", "GET", "/nix-cache-info", get_nix_cache_info),
    Operation("DoesNarInfoExist", "HEAD", "/{store_path_hash}.narinfo", does_nar_info_exist),
    Operation("GetNarInfo", "GET", "/{store_path_hash}.narinfo", get_nar_info),
    Operation("PutNarInfoObject", "PUT", "/{store_path_hash}.narinfo", put_nar_info),
    Operation("DoesNarExist", "HEAD", "/nar/{file_hash}.nar.{compression}", does_nar_exist),
    Operation("GetNarObject", "GET", "/nar/{file_hash}.nar.{compression}", get_nar),
    Operation("PutNarObject", "PUT", "/nar/{file_hash}.nar.{compression}", put_nar),
    Operation("GetDeriverBuildLog", "GET", "/log/{deriver}", get_deriver_build_log),
    Operation("GetNarFileListing", "GET", "/{store_path_hash}.ls", get_nar_file_listing),
]


def register_routes(app: FastAPI, chain: InterceptorChain) -> None:
    for op in OPERATIONS:
        app.add_api_route(
            op.path,
            chain.wrap(op.operation_id, op.handler),
            methods=[op.method],
            operation_id=op.operation_id,
            name=op.operation_id,
        )
