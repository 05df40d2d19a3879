"""
Gallery service for storing generated images under their project.
Writes image files to local storage and records them in project_images.
"""
import re
import uuid
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Dict, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from photobatch.config import STORAGE_LOCAL_PATH, MEDIA_BASE_URL
from photobatch.database import ProjectImage
from photobatch.errors import InfrastructureError

logger = logging.getLogger(__name__)

_PATH_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class GalleryImage:
    data: bytes
    filename: str
    mime: str
    index: int
    reference: Optional[str] = None
    asin: Optional[str] = None
    prompt: Optional[str] = None


class GalleryService:
    """
    Persists generated images for a project.

    Files land in {storage_root}/projects/{project_id}/{uuid}-{filename} and are
    linked as {media_base_url}/projects/...; the app serves storage_root at MEDIA_MOUNT_PATH.
    """

    def __init__(self, db_session: Session, storage_root: str = STORAGE_LOCAL_PATH,
                 media_base_url: str = MEDIA_BASE_URL):
        self.db = db_session
        self.storage_root = Path(storage_root)
        self.media_base_url = media_base_url.rstrip("/")

    def public_url(self, storage_path: str) -> str:
        return f"{self.media_base_url}/{storage_path}"

    def add_images(self, project_id: str, images: List[GalleryImage],
                   original_image_url: Optional[str] = None,
                   workflow_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Store images and their records as one unit.

        Returns:
            list: persisted records, each with a public `url`

        Raises:
            InfrastructureError: if a file or row could not be written
        """
        if not images:
            return []

        project_dir = _PATH_UNSAFE.sub("-", project_id).strip("-") or "default"
        written: List[Path] = []
        records: List[ProjectImage] = []

        try:
            target_dir = self.storage_root / "projects" / project_dir
            target_dir.mkdir(parents=True, exist_ok=True)

            for image in images:
                storage_path = f"projects/{project_dir}/{uuid.uuid4()}-{image.filename}"
                file_path = self.storage_root / storage_path
                file_path.write_bytes(image.data)
                written.append(file_path)

                record = ProjectImage(
                    project_id=project_id,
                    workflow_id=workflow_id,
                    reference=image.reference,
                    asin=image.asin,
                    image_index=image.index,
                    filename=image.filename,
                    mime=image.mime,
                    storage_path=storage_path,
                    prompt_used=image.prompt,
                    original_image_url=original_image_url,
                    generation_mode="automated",
                    validation_status="pending",
                )
                self.db.add(record)
                records.append(record)

            self.db.commit()
        except (OSError, SQLAlchemyError) as e:
            self.db.rollback()
            for path in written:
                path.unlink(missing_ok=True)
            logger.error(f"[GALLERY] Failed to store {len(images)} images for project {project_id}: {e}")
            raise InfrastructureError(f"Gallery write failed: {str(e)}") from e

        logger.info(f"[GALLERY] Stored {len(records)} images for project {project_id}")
        results = []
        for record in records:
            data = record.to_dict()
            data["url"] = self.public_url(record.storage_path)
            results.append(data)
        return results
