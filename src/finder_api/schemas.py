####################################
# --- Request/response schemas --- #
####################################

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from finder_api.storage.base import DirectoryEntry


class Envelope(BaseModel):
    """Uniform response wrapper returned by every JSON command."""

    status: Literal["ok", "error"] = "ok"
    data: Optional[Any] = None
    error: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "Envelope":
        return cls(status="ok", data=data)


class FileNode(BaseModel):
    """One entry of a listing, in the shape the file-manager frontend expects."""

    type: Literal["file", "dir"]
    path: str = Field(
        description="Qualified path of the entry.",
        json_schema_extra={"example": "local://docs/report.pdf"},
    )
    basename: str
    extension: Optional[str] = None
    mime_type: Optional[str] = None
    last_modified: int = Field(description="Modification time in epoch seconds.")
    file_size: int = Field(0, description="Size in bytes, 0 for directories.")
    url: Optional[str] = Field(None, description="Public URL when the entry is below a public link.")

    @classmethod
    def from_entry(cls, entry: DirectoryEntry, url: Optional[str] = None) -> "FileNode":
        return cls(
            type="dir" if entry.is_directory else "file",
            path=entry.path.qualified,
            basename=entry.name,
            extension=entry.extension,
            mime_type=entry.mime_type,
            last_modified=entry.last_modified,
            file_size=entry.size,
            url=url,
        )


class Listing(BaseModel):
    """Payload of `index`, `search` and every command that refreshes the view."""

    adapter: str
    storages: List[str]
    dirname: str
    files: List[FileNode]

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "adapter": "local",
                "storages": ["local"],
                "dirname": "local://docs",
                "files": [
                    {
                        "type": "file",
                        "path": "local://docs/report.pdf",
                        "basename": "report.pdf",
                        "extension": "pdf",
                        "mime_type": "application/pdf",
                        "last_modified": 1704067200,
                        "file_size": 512,
                        "url": None,
                    }
                ],
            }
        }
    )


class FolderRef(BaseModel):
    adapter: str
    path: str
    basename: str


class SubfoldersResponse(BaseModel):
    folders: List[FolderRef]


class UploadFailure(BaseModel):
    name: str
    error: str
    message: str


class UploadResponse(BaseModel):
    uploaded: List[FileNode]
    failed: List[UploadFailure]
    listing: Listing


class UnarchiveResponse(BaseModel):
    destination: str
    extracted: List[str]
    skipped: List[Dict[str, str]]
    listing: Listing


class FileItem(BaseModel):
    path: str = Field(min_length=1)


class NewFolderRequest(BaseModel):
    name: str = Field(min_length=1)


class NewFileRequest(BaseModel):
    name: str = Field(min_length=1)


class RenameRequest(BaseModel):
    item: str = Field(min_length=1, description="Path of the entry to rename")
    name: str = Field(min_length=1, description="New name, a single path segment")


class MoveRequest(BaseModel):
    item: str = Field(description="Destination directory")
    items: List[FileItem] = Field(min_length=1)


class DuplicateRequest(BaseModel):
    items: List[FileItem] = Field(min_length=1)
    item: Optional[str] = Field(None, description="Destination directory; defaults to each item's own")


class DeleteRequest(BaseModel):
    items: List[FileItem] = Field(min_length=1)


class SaveRequest(BaseModel):
    content: str


class ArchiveRequest(BaseModel):
    name: str = Field(min_length=1, description="Archive name, `.zip` is appended when missing")
    items: List[FileItem] = Field(min_length=1)


class UnarchiveRequest(BaseModel):
    item: str = Field(min_length=1, description="Path of the zip file")
