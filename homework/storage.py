"""
Supabase Storage for answer images.
Saves each accepted page to the submissions bucket and returns its public URL.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Protocol, Sequence

from storage3.exceptions import StorageApiError
from werkzeug.utils import secure_filename

from homework.errors import CancelledError, UploadError
from homework.schema import AnswerImage, PipelineStage

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "submissions"


class ObjectStore(Protocol):
    """Durable object store: put(key, bytes) -> public URL."""

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        ...


class SupabaseObjectStore:
    """Object store backed by a Supabase Storage bucket."""

    def __init__(self, client, bucket: str = DEFAULT_BUCKET):
        self.client = client
        self.bucket = bucket

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        """
        Upload bytes under key and return the public URL.

        Keys are unique per attempt, so an existing object is an error rather
        than something to overwrite.
        """
        bucket = self.client.storage.from_(self.bucket)
        bucket.upload(
            path=key,
            file=data,
            file_options={
                "content-type": content_type or "application/octet-stream",
                "upsert": "false",
            },
        )
        return bucket.get_public_url(key)


class MemoryObjectStore:
    """In-process object store for offline runs and tests."""

    def __init__(self, bucket: str = DEFAULT_BUCKET):
        self.bucket = bucket
        self.objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        with self._lock:
            if key in self.objects:
                raise FileExistsError(f"Object already exists: {key}")
            self.objects[key] = data
        return f"memory://{self.bucket}/{key}"


def build_storage_key(
    submitter_id: str,
    assignment_id: str,
    filename: str,
    uploaded_at_ms: Optional[int] = None,
    position: int = 0,
    attempt_id: Optional[str] = None,
) -> str:
    """
    Build the bucket path for one answer image.

    Layout: submitter_id/assignment_id/<epoch ms>[_<attempt id>]_<position>_<filename>.
    The attempt id separates retries started within the same millisecond; the
    position keeps two pages with the same name apart within one attempt.

    Raises:
        UploadError if any identifying component is blank
    """
    if not (submitter_id or "").strip() or not (assignment_id or "").strip():
        raise UploadError(f"Malformed storage key for {filename}: missing submitter or assignment id", filename)
    if "/" in submitter_id or "/" in assignment_id:
        raise UploadError(f"Malformed storage key for {filename}: ids must not contain '/'", filename)
    safe_name = secure_filename(filename or "") or "image"
    if uploaded_at_ms is None:
        uploaded_at_ms = int(time.time() * 1000)
    stamp = f"{uploaded_at_ms}_{attempt_id}" if attempt_id else str(uploaded_at_ms)
    return f"{submitter_id}/{assignment_id}/{stamp}_{position}_{safe_name}"


class ObjectUploader:
    """
    Persists accepted images and returns their URLs in input order.

    Uploads are sequential by default; with max_workers > 1 they run in a
    thread pool. Either way the first failure fails the whole stage and no
    partial URL list is returned.
    """

    def __init__(self, store: ObjectStore, max_workers: int = 1):
        self.store = store
        self.max_workers = max(1, max_workers)

    def _upload_one(
        self,
        image: AnswerImage,
        key: str,
        cancel_event: Optional[threading.Event],
    ) -> str:
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledError("Submission cancelled during upload", PipelineStage.UPLOADING)
        try:
            url = self.store.put(key, image.data, image.content_type or None)
        except StorageApiError as e:
            message = getattr(e, "message", None) or str(e)
            raise UploadError(f"Upload failed for {image.filename}: {message}", image.filename) from e
        except Exception as e:
            raise UploadError(f"Upload failed for {image.filename}: {e}", image.filename) from e
        if not url:
            raise UploadError(f"Upload failed for {image.filename}: storage returned no URL", image.filename)
        logger.debug(f"Uploaded {image.filename} → {key}")
        return url

    def upload(
        self,
        submitter_id: str,
        assignment_id: str,
        images: Sequence[AnswerImage],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[str]:
        """
        Upload every image for one submission attempt.

        Args:
            submitter_id: Stable id of the student
            assignment_id: Homework id
            images: Accepted images, in page order
            cancel_event: Set by the caller to abandon the attempt

        Returns:
            Public URLs, one per image, in the same order as images

        Raises:
            UploadError naming the first file that failed
        """
        uploaded_at_ms = int(time.time() * 1000)
        attempt_id = uuid.uuid4().hex[:8]
        keys = [
            build_storage_key(submitter_id, assignment_id, image.filename, uploaded_at_ms, position, attempt_id)
            for position, image in enumerate(images)
        ]
        logger.info(f"⬆️ Uploading {len(images)} image(s) for assignment {assignment_id}")

        if self.max_workers == 1 or len(images) <= 1:
            return [self._upload_one(image, key, cancel_event) for image, key in zip(images, keys)]

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [
                executor.submit(self._upload_one, image, key, cancel_event)
                for image, key in zip(images, keys)
            ]
            try:
                # Collected in submission order, so URLs line up with the input.
                return [future.result() for future in futures]
            except BaseException:
                for future in futures:
                    future.cancel()
                raise
