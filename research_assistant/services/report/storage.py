from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Literal

from supabase import Client, create_client

from research_assistant.services import logger as log_service

DEFAULT_PREFIX = "reports"
DEFAULT_FILENAME = "report.pdf"


@dataclass(slots=True)
class ArtifactPersistResult:
    status: Literal["uploaded", "skipped"]
    path: str
    bucket: str | None = None


class SupabaseArtifactStore:
    """Uploads report PDFs to a Supabase storage bucket.

    Without a bucket the upload is skipped and a ``buffer://`` placeholder path
    is returned; skipping is not a failure. Upload errors propagate.
    """

    def __init__(
        self,
        *,
        bucket: str = "",
        supabase_url: str = "",
        service_key: str = "",
        client: Client | None = None,
    ):
        self.bucket = bucket
        self._supabase_url = supabase_url
        self._service_key = service_key
        self._client = client

    def _get_client(self) -> Client:
        if self._client is None:
            self._client = create_client(self._supabase_url, self._service_key)
        return self._client

    async def persist(
        self,
        session_id: str,
        data: bytes,
        filename: str | None = None,
        *,
        content_type: str = "application/pdf",
    ) -> ArtifactPersistResult:
        filename = (filename or "").strip() or DEFAULT_FILENAME

        if not self.bucket:
            log_service.log_event(
                event_type="report_storage_skipped",
                message="No storage bucket configured",
                session_id=session_id,
            )
            return ArtifactPersistResult(status="skipped", path=f"buffer://{session_id}/{filename}")

        object_path = f"{DEFAULT_PREFIX}/{session_id}/{filename}"
        storage = self._get_client().storage.from_(self.bucket)
        # The supabase client is synchronous.
        await asyncio.to_thread(
            storage.upload,
            object_path,
            data,
            {"content-type": content_type, "cache-control": "0", "upsert": "true"},
        )
        log_service.log_event(
            event_type="report_storage_uploaded",
            message=f"Uploaded {object_path}",
            session_id=session_id,
            bucket=self.bucket,
            size=len(data),
        )
        return ArtifactPersistResult(status="uploaded", path=object_path, bucket=self.bucket)
