import logging
import posixpath
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar
from urllib.parse import quote

from fastapi import APIRouter, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from finder_api.config.settings import Settings
from finder_api.errors import BadRequest, Conflict, UnsupportedCommand
from finder_api.schemas import (
    ArchiveRequest,
    DeleteRequest,
    DuplicateRequest,
    Envelope,
    FileNode,
    FolderRef,
    Listing,
    MoveRequest,
    NewFileRequest,
    NewFolderRequest,
    RenameRequest,
    SaveRequest,
    SubfoldersResponse,
    UnarchiveRequest,
    UnarchiveResponse,
    UploadFailure,
    UploadResponse,
)
from finder_api.services.archive import ExtractionLimits, create_archive, extract_archive
from finder_api.services.links import PublicLinks
from finder_api.services.transfer import (
    UploadPart,
    open_download,
    require_directory,
    transfer,
    unique_name,
    upload_parts,
)
from finder_api.storage.base import DirectoryEntry, StorageAdapter, guess_mime_type, walk
from finder_api.storage.paths import ResolvedPath, split_qualified
from finder_api.storage.registry import StorageRegistry
from finder_api.utils.decorators import log_command_duration

logger = logging.getLogger(__name__)

router = APIRouter(tags=["finder"])

M = TypeVar("M", bound=BaseModel)


@dataclass
class CommandContext:
    """Everything a command handler needs about the current request."""

    request: Request
    settings: Settings
    registry: StorageRegistry
    links: PublicLinks
    storage: StorageAdapter
    directory: ResolvedPath
    filter: Optional[str] = None
    overwrite: bool = False

    @property
    def resolver(self):
        return self.registry.resolver

    def resolve(self, raw_path: str) -> ResolvedPath:
        """Resolve a payload path; a `<storage>://` prefix may pick another storage."""
        return self.resolver.resolve_qualified(raw_path, self.directory.storage)

    def storage_for(self, path: ResolvedPath) -> StorageAdapter:
        return self.registry.get_storage(path.storage)

    def node(self, entry: DirectoryEntry) -> FileNode:
        return FileNode.from_entry(entry, url=self.links.url_for(entry))

    async def listing(self, entries: Optional[List[DirectoryEntry]] = None) -> Listing:
        """Listing of the current directory, or of `entries` labelled with it."""
        if entries is None:
            entries = await self.storage.list(self.directory)
        entries = sorted(entries, key=lambda e: (not e.is_directory, e.name.casefold()))
        return Listing(
            adapter=self.directory.storage,
            storages=list(self.registry),
            dirname=self.directory.qualified,
            files=[self.node(entry) for entry in entries],
        )

    async def payload(self, model: Type[M]) -> M:
        """
        Parse the JSON body into `model`.

        Raises:
            BadRequest: body is not JSON
            pydantic.ValidationError: body does not match `model`
        """
        try:
            body = await self.request.json()
        except ValueError as e:
            raise BadRequest("Request body must be a JSON object") from e
        return model.model_validate(body)


Handler = Callable[[CommandContext], Awaitable[Any]]

# command name -> (HTTP method, handler)
COMMANDS: Dict[str, Tuple[str, Handler]] = {}


def command(name: str, method: str) -> Callable[[Handler], Handler]:
    """Register a handler for `?q=<name>`."""

    def decorator(func: Handler) -> Handler:
        wrapped = log_command_duration(name)(func)
        COMMANDS[name] = (method, wrapped)
        return wrapped

    return decorator


async def _bytes_stream(data: bytes) -> AsyncIterator[bytes]:
    if data:
        yield data


async def _iter_upload(upload: UploadFile, chunk_size: int) -> AsyncIterator[bytes]:
    while True:
        chunk = await upload.read(chunk_size)
        if not chunk:
            break
        yield chunk


def file_response(entry: DirectoryEntry, stream: AsyncIterator[bytes], disposition: str) -> StreamingResponse:
    """Stream a file body with length, type and a download name that survives non-ASCII."""
    ascii_name = entry.name.encode("ascii", "ignore").decode().replace('"', "") or "download"
    headers = {
        "Content-Length": str(entry.size),
        "Content-Disposition": f"{disposition}; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(entry.name)}",
    }
    return StreamingResponse(
        stream, media_type=entry.mime_type or guess_mime_type(entry.name), headers=headers
    )


def _not_root(path: ResolvedPath) -> ResolvedPath:
    if path.is_root:
        raise BadRequest("The storage root cannot be used here")
    return path


def _outermost(paths: List[ResolvedPath]) -> List[ResolvedPath]:
    """Drop repeated paths and paths below another selected path; order is kept."""
    kept: List[ResolvedPath] = []
    for path in paths:
        if any(path.is_within(other) for other in paths if other != path) or path in kept:
            continue
        kept.append(path)
    return kept


###############
# --- GET --- #
###############


@command("index", "GET")
async def index(ctx: CommandContext) -> Listing:
    return await ctx.listing()


@command("subfolders", "GET")
async def subfolders(ctx: CommandContext) -> SubfoldersResponse:
    entries = await ctx.storage.list(ctx.directory)
    folders = [
        FolderRef(adapter=entry.path.storage, path=entry.path.qualified, basename=entry.name)
        for entry in sorted(entries, key=lambda e: e.name.casefold())
        if entry.is_directory
    ]
    return SubfoldersResponse(folders=folders)


@command("search", "GET")
async def search(ctx: CommandContext) -> Listing:
    """Files below the current directory whose name contains `filter`, case-insensitively."""
    if not ctx.filter:
        raise BadRequest("search needs a non-empty `filter` parameter")
    needle = ctx.filter.casefold()
    await require_directory(ctx.storage, ctx.directory)
    matches = [
        entry
        async for entry in walk(ctx.storage, ctx.directory)
        if not entry.is_directory and needle in entry.name.casefold()
    ]
    return await ctx.listing(matches)


@command("preview", "GET")
async def preview(ctx: CommandContext) -> StreamingResponse:
    entry, stream = await open_download(ctx.storage, ctx.directory, ctx.settings.stream_idle_timeout)
    return file_response(entry, stream, "inline")


@command("download", "GET")
async def download(ctx: CommandContext) -> StreamingResponse:
    entry, stream = await open_download(ctx.storage, ctx.directory, ctx.settings.stream_idle_timeout)
    return file_response(entry, stream, "attachment")


################
# --- POST --- #
################


@command("upload", "POST")
async def upload(ctx: CommandContext) -> UploadResponse:
    """
    Store every file part of a multipart body in the current directory.

    A `name` field per file overrides its filename and may contain
    sub-directories, e.g. when a whole folder is dropped in the browser.
    """
    try:
        form = await ctx.request.form()
    except StarletteHTTPException as e:
        raise BadRequest(f"Malformed multipart body: {e.detail}") from e

    try:
        items = form.multi_items()
        files = [value for _, value in items if isinstance(value, UploadFile)]
        names = [value for key, value in items if key == "name" and isinstance(value, str)]
        if not files:
            raise BadRequest("No file in upload request")
        if names and len(names) != len(files):
            raise BadRequest("Send one `name` field per uploaded file, or none")

        parts = [
            UploadPart(
                filename=names[i] if names else (upload_file.filename or ""),
                stream=_iter_upload(upload_file, ctx.settings.chunk_size),
            )
            for i, upload_file in enumerate(files)
        ]
        report = await upload_parts(
            ctx.storage,
            ctx.resolver,
            ctx.directory,
            parts,
            max_size=ctx.settings.max_upload_size,
            idle_timeout=ctx.settings.stream_idle_timeout,
            overwrite=ctx.overwrite,
        )
    finally:
        await form.close()

    report.raise_if_nothing_uploaded()
    return UploadResponse(
        uploaded=[ctx.node(entry) for entry in report.uploaded],
        failed=[UploadFailure(**failure) for failure in report.failed],
        listing=await ctx.listing(),
    )


@command("newfolder", "POST")
async def newfolder(ctx: CommandContext) -> Listing:
    payload = await ctx.payload(NewFolderRequest)
    target = ctx.resolver.child(ctx.directory, payload.name)
    await require_directory(ctx.storage, ctx.directory)
    if await ctx.storage.exists(target):
        raise Conflict(f"Path already exists: {target}")
    await ctx.storage.mkdir(target)
    return await ctx.listing()


@command("newfile", "POST")
async def newfile(ctx: CommandContext) -> Listing:
    payload = await ctx.payload(NewFileRequest)
    target = ctx.resolver.child(ctx.directory, payload.name)
    await require_directory(ctx.storage, ctx.directory)
    await ctx.storage.write_stream(target, _bytes_stream(b""), overwrite=False)
    return await ctx.listing()


@command("rename", "POST")
async def rename(ctx: CommandContext) -> Listing:
    payload = await ctx.payload(RenameRequest)
    src = _not_root(ctx.resolve(payload.item))
    dst = ctx.resolver.child(src.parent, payload.name)
    await ctx.storage_for(src).rename(src, dst)
    return await ctx.listing()


@command("move", "POST")
async def move(ctx: CommandContext) -> Listing:
    """Move items into a directory, possibly in another storage. All items are checked first."""
    payload = await ctx.payload(MoveRequest)
    dest = ctx.resolve(payload.item)
    dest_storage = ctx.storage_for(dest)
    await require_directory(dest_storage, dest)

    # Items below another selected item travel with it
    sources = _outermost([_not_root(ctx.resolve(item.path)) for item in payload.items])
    plan: List[Tuple[ResolvedPath, ResolvedPath]] = []
    targets = set()
    for src in sources:
        entry = await ctx.storage_for(src).stat(src)
        target = ctx.resolver.child(dest, src.name)
        if entry.is_directory and dest.is_within(src):
            raise BadRequest(f"Cannot move {src} into itself")
        if target in targets or await dest_storage.exists(target):
            raise Conflict(f"Path already exists: {target}")
        targets.add(target)
        plan.append((src, target))

    for src, target in plan:
        src_storage = ctx.storage_for(src)
        if src.storage == target.storage:
            await src_storage.move(src, target)
        else:
            await transfer(src_storage, src, dest_storage, target, remove_source=True)
    return await ctx.listing()


@command("duplicate", "POST")
async def duplicate(ctx: CommandContext) -> Listing:
    """Copy items next to themselves, or into `item` when given, under a free name."""
    payload = await ctx.payload(DuplicateRequest)
    dest = ctx.resolve(payload.item) if payload.item else None
    if dest is not None:
        await require_directory(ctx.storage_for(dest), dest)

    sources: List[Tuple[ResolvedPath, DirectoryEntry]] = []
    for item in payload.items:
        src = _not_root(ctx.resolve(item.path))
        entry = await ctx.storage_for(src).stat(src)
        if dest is not None and entry.is_directory and dest.is_within(src):
            raise BadRequest(f"Cannot copy {src} into itself")
        sources.append((src, entry))

    for src, entry in sources:
        directory = dest if dest is not None else src.parent
        dest_storage = ctx.storage_for(directory)
        target = await unique_name(
            dest_storage, ctx.resolver.child(directory, src.name), is_directory=entry.is_directory
        )
        if src.storage == target.storage:
            await dest_storage.copy(src, target)
        else:
            await transfer(ctx.storage_for(src), src, dest_storage, target)
    return await ctx.listing()


@command("delete", "POST")
async def delete(ctx: CommandContext) -> Listing:
    payload = await ctx.payload(DeleteRequest)
    paths = _outermost([_not_root(ctx.resolve(item.path)) for item in payload.items])
    for path in paths:
        await ctx.storage_for(path).stat(path)
    for path in paths:
        await ctx.storage_for(path).delete(path, recursive=True)
    return await ctx.listing()


@command("save", "POST")
async def save(ctx: CommandContext) -> FileNode:
    """Replace the text content of the file at `path`."""
    payload = await ctx.payload(SaveRequest)
    target = _not_root(ctx.directory)
    await ctx.storage.write_stream(target, _bytes_stream(payload.content.encode("utf-8")), overwrite=True)
    return ctx.node(await ctx.storage.stat(target))


@command("archive", "POST")
async def archive(ctx: CommandContext) -> Listing:
    payload = await ctx.payload(ArchiveRequest)
    name = payload.name if payload.name.lower().endswith(".zip") else f"{payload.name}.zip"
    destination = ctx.resolver.child(ctx.directory, name)
    sources = [ctx.resolve(item.path) for item in payload.items]
    await create_archive(ctx.storage, sources, destination)
    return await ctx.listing()


@command("unarchive", "POST")
async def unarchive(ctx: CommandContext) -> UnarchiveResponse:
    """Extract a zip into a new folder named after it inside the current directory."""
    payload = await ctx.payload(UnarchiveRequest)
    archive_path = _not_root(ctx.resolve(payload.item))
    if archive_path.storage != ctx.directory.storage:
        raise BadRequest(f"{archive_path} is not in storage {ctx.directory.storage!r}")
    await require_directory(ctx.storage, ctx.directory)

    stem = posixpath.splitext(archive_path.name)[0] or archive_path.name
    destination = await unique_name(ctx.storage, ctx.resolver.child(ctx.directory, stem), is_directory=True)
    limits = ExtractionLimits(
        max_bytes=ctx.settings.max_extract_size,
        max_entries=ctx.settings.max_extract_entries,
        chunk_size=ctx.settings.chunk_size,
    )
    result = await extract_archive(ctx.storage, ctx.resolver, archive_path, destination, limits)
    return UnarchiveResponse(
        destination=result.destination.qualified,
        extracted=result.extracted,
        skipped=result.skipped,
        listing=await ctx.listing(),
    )


##################
# --- Router --- #
##################


@router.api_route(
    "",
    methods=["GET", "POST"],
    response_model=Envelope,
    responses={
        status.HTTP_200_OK: {"model": Envelope, "description": "Command result, or a raw file body"},
        status.HTTP_400_BAD_REQUEST: {"model": Envelope},
        status.HTTP_403_FORBIDDEN: {"model": Envelope},
        status.HTTP_404_NOT_FOUND: {"model": Envelope},
        status.HTTP_409_CONFLICT: {"model": Envelope},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": Envelope},
    },
)
async def finder(
    request: Request,
    q: Optional[str] = Query(None, description="Command name, e.g. `index`"),
    adapter: Optional[str] = Query(None, description="Storage key; defaults to the first storage"),
    path: Optional[str] = Query(None, description="Current directory, or the file for preview/download/save"),
    filter_: Optional[str] = Query(None, alias="filter", description="Search term"),
    overwrite: bool = Query(False, description="Replace existing files on upload"),
):
    """
    Single command endpoint of the file manager.

    Args:
        request: The incoming request; JSON or multipart body for POST commands
        q: Command to run
        adapter: Storage to run it against
        path: Path the command applies to

    Returns:
        An envelope with the command result, or a streamed file for preview/download
    """
    if not q:
        raise BadRequest("Missing command parameter `q`")
    try:
        method, handler = COMMANDS[q]
    except KeyError:
        raise UnsupportedCommand(f"Unsupported command: {q!r}") from None
    if request.method != method:
        raise BadRequest(f"{q} must be sent with {method}")

    registry: StorageRegistry = request.app.state.registry
    storage_key = adapter or split_qualified(path or "")[0] or registry.default_key
    storage = registry.get_storage(storage_key)
    ctx = CommandContext(
        request=request,
        settings=request.app.state.settings,
        registry=registry,
        links=request.app.state.public_links,
        storage=storage,
        directory=registry.resolver.resolve(storage_key, path),
        filter=filter_,
        overwrite=overwrite,
    )

    result = await handler(ctx)
    if isinstance(result, Response):
        return result
    return Envelope.ok(result)
