"""Short-lived storage for the raw payload of an import job."""
import logging
from typing import Optional

from routine_import_api.constants import ARTIFACT_TTL_HOURS
from routine_import_api.models import Artifact
from routine_import_api.services.repository import ImportRepository
from routine_import_api.utils import add_hours_iso

logger = logging.getLogger(__name__)


class ArtifactStore:
    """Keeps uploaded bytes until the worker has parsed them."""

    def __init__(self, repository: ImportRepository):
        self.repository = repository

    def put(
        self,
        job_id: str,
        payload: bytes,
        mime_type: Optional[str] = None,
        file_name: Optional[str] = None,
        ttl_hours: float = ARTIFACT_TTL_HOURS,
    ) -> Artifact:
        artifact = Artifact(
            job_id=job_id,
            payload=payload,
            mime_type=mime_type,
            file_name=file_name,
            expires_at=add_hours_iso(ttl_hours),
        )
        self.repository.save_artifact(artifact)
        logger.debug("Stored %d byte artifact for job %s", len(payload), job_id)
        return artifact

    def get(self, job_id: str) -> Optional[Artifact]:
        return self.repository.get_artifact(job_id)
