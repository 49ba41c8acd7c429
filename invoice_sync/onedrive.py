"""
OneDrive (Microsoft Graph drive API) integration: folder provisioning,
uploads, share links, deletion and picker listings.
"""

import base64
from enum import Enum
from functools import partial
from typing import List, Optional

from loguru import logger

from invoice_sync.errors import FolderCreateFailed, GraphError, UploadFailed
from invoice_sync.graph_client import GraphClient, encode_drive_path, odata_string
from invoice_sync.models import DriveItem, FolderEntry, SpreadsheetEntry
from invoice_sync.retry import RetryPolicy

XLSX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
SPREADSHEET_SUFFIXES = (".xlsx",)


class DeleteOutcome(Enum):
    DELETED = "deleted"
    ABSENT = "absent"       # nothing to delete
    FAILED = "failed"       # logged, never raised


def _children_path(parent: str) -> str:
    if not parent:
        return "/me/drive/root/children"
    return f"/me/drive/root:/{encode_drive_path(parent)}:/children"


def encode_sharing_url(url: str) -> str:
    """Encode a sharing URL for the ``/shares/{id}`` endpoint."""
    encoded = base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii").rstrip("=")
    return f"u!{encoded}"


class OneDriveService:
    """Service for interacting with the signed-in user's OneDrive."""

    def __init__(self, graph: GraphClient, retry: Optional[RetryPolicy] = None):
        """
        Initialize OneDrive service.

        Args:
            graph: Authenticated Graph transport
            retry: Retry policy for transient failures
        """
        self.graph = graph
        self.retry = retry or RetryPolicy()

    async def get_item(self, path: str) -> Optional[DriveItem]:
        """Look up an item by drive path; None when it does not exist."""
        try:
            data = await self.retry.run(
                partial(self.graph.get, f"/me/drive/root:/{encode_drive_path(path)}", operation="get_item"),
                operation=f"get item {path}",
            )
        except GraphError as e:
            if e.status_code == 404:
                return None
            raise
        return DriveItem.from_graph(data)

    async def ensure_folder(self, path: str) -> List[str]:
        """
        Make sure every segment of a slash-separated folder path exists.

        Parents are checked (and created if absent) before children, so a
        second call with the same path creates nothing.

        Args:
            path: Folder path relative to the drive root, e.g. "Invoices/2024"

        Returns:
            Paths of the folders created by this call
        """
        segments = [segment.strip() for segment in path.split("/") if segment.strip()]
        created: List[str] = []
        current = ""

        for segment in segments:
            parent = current
            current = f"{current}/{segment}" if current else segment
            try:
                if await self.get_item(current) is not None:
                    continue

                body = {
                    "name": segment,
                    "folder": {},
                    "@microsoft.graph.conflictBehavior": "rename",
                }
                await self.retry.run(
                    partial(self.graph.post, _children_path(parent), json=body, operation="create_folder"),
                    operation=f"create folder {current}",
                )
                created.append(current)
                logger.info(f"Created OneDrive folder: {current}")
            except GraphError as e:
                logger.error(f"Failed to create folder part {current}: {e}")
                raise FolderCreateFailed(current, e) from e

        return created

    async def upload_file(
        self,
        path: str,
        data: bytes,
        content_type: str,
        conflict_behavior: Optional[str] = None,
    ) -> DriveItem:
        """
        Single-request upload of a small file to a drive path.

        Args:
            path: Destination path including the file name
            data: File bytes
            content_type: MIME type of the content
            conflict_behavior: "fail" or "rename" to keep an existing item; default replaces it

        Returns:
            The uploaded drive item (id and webUrl)
        """
        params = {"@microsoft.graph.conflictBehavior": conflict_behavior} if conflict_behavior else None
        try:
            result = await self.retry.run(
                partial(
                    self.graph.put,
                    f"/me/drive/root:/{encode_drive_path(path)}:/content",
                    content=data,
                    content_type=content_type,
                    params=params,
                    operation="upload_file",
                ),
                operation=f"upload {path}",
            )
        except GraphError as e:
            logger.error(f"Upload failed for {path}: {e}")
            raise UploadFailed(path, e) from e

        item = DriveItem.from_graph(result)
        logger.info(f"Uploaded {path} ({len(data)} bytes) as item {item.id}")
        return item

    async def create_share_link(self, item_id: str, fallback_url: Optional[str] = None) -> Optional[str]:
        """
        Create an anonymous view-only link; fall back to the item's own URL on failure.
        """
        try:
            data = await self.graph.post(
                f"/me/drive/items/{item_id}/createLink",
                json={"type": "view", "scope": "anonymous"},
                operation="create_share_link",
            )
            share_url = ((data or {}).get("link") or {}).get("webUrl")
            if share_url:
                return share_url
            logger.warning(f"Share link response for {item_id} had no URL, using item URL")
        except GraphError as e:
            logger.warning(f"Could not create share link for {item_id}, using item URL: {e}")
        return fallback_url

    async def delete_item(self, item_id: str) -> DeleteOutcome:
        try:
            await self.retry.run(
                partial(self.graph.delete, f"/me/drive/items/{item_id}", operation="delete_item"),
                operation=f"delete item {item_id}",
            )
        except GraphError as e:
            if e.status_code == 404:
                return DeleteOutcome.ABSENT
            logger.warning(f"Failed to delete item {item_id}: {e}")
            return DeleteOutcome.FAILED
        return DeleteOutcome.DELETED

    async def delete_by_path(self, path: str) -> DeleteOutcome:
        """Best-effort delete of the item at a drive path."""
        try:
            await self.retry.run(
                partial(self.graph.delete, f"/me/drive/root:/{encode_drive_path(path)}", operation="delete_by_path"),
                operation=f"delete {path}",
            )
        except GraphError as e:
            if e.status_code == 404:
                logger.info(f"OneDrive file already absent: {path}")
                return DeleteOutcome.ABSENT
            logger.warning(f"Failed to delete OneDrive file {path}: {e}")
            return DeleteOutcome.FAILED

        logger.info(f"Deleted OneDrive file: {path}")
        return DeleteOutcome.DELETED

    async def delete_by_url(self, url: str) -> DeleteOutcome:
        """Best-effort delete of the item behind a sharing or web URL."""
        try:
            data = await self.graph.get(
                f"/shares/{encode_sharing_url(url)}/driveItem",
                operation="resolve_share",
            )
        except GraphError as e:
            if e.status_code == 404:
                logger.info(f"No OneDrive item behind {url}")
                return DeleteOutcome.ABSENT
            logger.warning(f"Could not resolve OneDrive URL {url}: {e}")
            return DeleteOutcome.FAILED

        if not data or not data.get("id"):
            return DeleteOutcome.FAILED
        outcome = await self.delete_item(data["id"])
        if outcome is DeleteOutcome.DELETED:
            logger.info(f"Deleted OneDrive file {data.get('name', data['id'])}")
        return outcome

    async def _list_children(self, path: str) -> List[dict]:
        return await self.retry.run(
            partial(self.graph.get_all, _children_path(path), operation="list_children"),
            operation=f"list {path or '/'}",
        )

    async def list_folders(self, path: str = "") -> List[FolderEntry]:
        """Folders directly under ``path`` (drive root when empty)."""
        path = path.strip("/")
        children = await self._list_children(path)
        return [
            FolderEntry(name=item["name"], path=f"{path}/{item['name']}" if path else item["name"])
            for item in children
            if "folder" in item
        ]

    async def list_spreadsheets(self, path: str = "") -> List[SpreadsheetEntry]:
        """Excel workbooks directly under ``path`` (drive root when empty)."""
        path = path.strip("/")
        children = await self._list_children(path)
        return [
            SpreadsheetEntry(
                id=item["id"],
                name=item["name"],
                path=f"{path}/{item['name']}" if path else item["name"],
            )
            for item in children
            if "folder" not in item and item.get("name", "").lower().endswith(SPREADSHEET_SUFFIXES)
        ]

    async def search_files(self, name: str) -> List[DriveItem]:
        """Files (not folders) anywhere in the drive whose name equals ``name``, ignoring case."""
        results = await self.retry.run(
            partial(
                self.graph.get_all,
                f"/me/drive/root/search(q={odata_string(name)})",
                operation="search",
            ),
            operation=f"search {name}",
        )
        wanted = name.casefold()
        return [
            DriveItem.from_graph(item)
            for item in results
            if "folder" not in item and item.get("name", "").casefold() == wanted
        ]
