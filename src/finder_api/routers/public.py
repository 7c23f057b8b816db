from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from finder_api.routers.finder import file_response
from finder_api.services.links import PublicLinks
from finder_api.services.transfer import open_download
from finder_api.storage.registry import StorageRegistry

router = APIRouter(tags=["public"])


@router.get("/public/{alias}/{file_path:path}")
async def public_file(request: Request, alias: str, file_path: str) -> StreamingResponse:
    """
    Serve a file below a public link alias, without the command protocol.

    Args:
        alias: Public link name from the `public_links` setting
        file_path: Path of the file relative to the alias base

    Returns:
        The file body, inline
    """
    links: PublicLinks = request.app.state.public_links
    registry: StorageRegistry = request.app.state.registry
    path = links.resolve(alias, file_path)
    entry, stream = await open_download(
        registry.get_storage(path.storage), path, request.app.state.settings.stream_idle_timeout
    )
    return file_response(entry, stream, "inline")
