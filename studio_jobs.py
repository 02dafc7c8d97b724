"""
Photo studio generation batches.
One batch fans out one request per style item; each item tracks its own
status and can be retried or refined with an edit instruction.
"""

import os
import json
import time
import uuid
import fcntl
import base64
import asyncio
import logging
from datetime import datetime
from typing import Optional, Dict, List, Any
from dataclasses import dataclass, field, asdict

from starlette.concurrency import run_in_threadpool

import gemini_service
import studio_store
from gemini_service import GenAIConfig
from presets import STYLES, translate


logger = logging.getLogger(__name__)

TEMP_DIR = os.path.abspath(os.environ.get("TEMP_DIR", "./temp"))
BATCHES_DIR = os.path.join(TEMP_DIR, "batches")

STATUS_LOADING = "loading"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

MODE_PRESET = "preset"
MODE_CUSTOM = "custom"
CUSTOM_EMOJI = "🎨"


class BatchStateError(Exception):
    """Raised when an item is not in a state that allows the operation."""


@dataclass
class ResultItem:
    """One style applied to the batch's source photo."""
    item_id: str
    style_id: str
    title: str
    emoji: str
    prompt: str
    status: str = STATUS_LOADING
    error: Optional[str] = None
    mime_type: Optional[str] = None
    has_image: bool = False
    edits: List[str] = field(default_factory=list)
    updated_at: float = field(default_factory=time.time)


@dataclass
class Batch:
    """A fan-out of generation requests over a single uploaded photo."""
    batch_id: str
    user_id: str
    mode: str
    model: str
    source_mime: str
    items: List[ResultItem] = field(default_factory=list)
    status: str = "running"  # running, completed
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def get_item(self, item_id: str) -> Optional[ResultItem]:
        for item in self.items:
            if item.item_id == item_id:
                return item
        return None

    def refresh_status(self) -> None:
        """Batch is running while any item is still loading."""
        if any(item.status == STATUS_LOADING for item in self.items):
            self.status = "running"
        else:
            self.status = "completed"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Batch":
        batch = cls(
            batch_id=data["batch_id"],
            user_id=data["user_id"],
            mode=data["mode"],
            model=data["model"],
            source_mime=data.get("source_mime", "image/jpeg"),
            items=[ResultItem(**item) for item in data.get("items", [])],
            status=data.get("status", "running"),
            error=data.get("error"),
        )
        batch.created_at = datetime.fromisoformat(data["created_at"])
        return batch


class BatchStore:
    """File-based batch storage shared across all workers."""

    @staticmethod
    def _get_batch_path(batch_id: str) -> str:
        return os.path.join(BATCHES_DIR, f"{batch_id}.json")

    @staticmethod
    def _get_source_path(batch_id: str) -> str:
        return os.path.join(BATCHES_DIR, f"{batch_id}_source.bin")

    @staticmethod
    def _get_item_image_path(batch_id: str, item_id: str) -> str:
        return os.path.join(BATCHES_DIR, f"{batch_id}_{item_id}.bin")

    @classmethod
    def save_batch(cls, batch: Batch) -> None:
        """Save batch to disk with file locking."""
        os.makedirs(BATCHES_DIR, exist_ok=True)
        with open(cls._get_batch_path(batch.batch_id), "w") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            json.dump(batch.to_dict(), f)
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        logger.debug(f"Batch {batch.batch_id} saved to disk")

    @classmethod
    def get_batch(cls, batch_id: str) -> Optional[Batch]:
        """Load batch from disk."""
        batch_path = cls._get_batch_path(batch_id)
        if not os.path.exists(batch_path):
            return None

        try:
            with open(batch_path, "r") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                data = json.load(f)
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            return Batch.from_dict(data)
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Failed to load batch {batch_id}: {e}")
            return None

    @classmethod
    def save_source_image(cls, batch_id: str, image_bytes: bytes) -> None:
        os.makedirs(BATCHES_DIR, exist_ok=True)
        with open(cls._get_source_path(batch_id), "wb") as f:
            f.write(image_bytes)

    @classmethod
    def get_source_image(cls, batch_id: str) -> Optional[bytes]:
        path = cls._get_source_path(batch_id)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            return f.read()

    @classmethod
    def save_item_image(cls, batch_id: str, item_id: str, image_bytes: bytes) -> None:
        os.makedirs(BATCHES_DIR, exist_ok=True)
        with open(cls._get_item_image_path(batch_id, item_id), "wb") as f:
            f.write(image_bytes)

    @classmethod
    def get_item_image(cls, batch_id: str, item_id: str) -> Optional[bytes]:
        path = cls._get_item_image_path(batch_id, item_id)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            return f.read()

    @classmethod
    def cleanup_old_batches(cls, max_age_hours: int = 24) -> int:
        """Remove batch files older than max_age_hours. Returns files removed."""
        if not os.path.exists(BATCHES_DIR):
            return 0

        removed = 0
        now = datetime.now()
        for filename in os.listdir(BATCHES_DIR):
            if not (filename.endswith(".json") or filename.endswith(".bin")):
                continue
            filepath = os.path.join(BATCHES_DIR, filename)
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(filepath))
                age_hours = (now - file_time).total_seconds() / 3600
                if age_hours > max_age_hours:
                    os.remove(filepath)
                    removed += 1
            except OSError as e:
                logger.warning(f"Could not clean up {filename}: {e}")

        if removed:
            logger.info(f"Cleaned up {removed} old batch file(s)")
        return removed


def build_items(mode: str, custom_prompt: str = "", lang: str = "zh") -> List[ResultItem]:
    """Create the loading items for a new batch."""
    if mode == MODE_CUSTOM:
        return [ResultItem(
            item_id=uuid.uuid4().hex[:12],
            style_id=f"custom-{int(time.time() * 1000)}",
            title=translate(lang, "customTitle"),
            emoji=CUSTOM_EMOJI,
            prompt=custom_prompt,
        )]

    return [
        ResultItem(
            item_id=uuid.uuid4().hex[:12],
            style_id=style.id,
            title=style.title,
            emoji=style.emoji,
            prompt=style.prompt,
        )
        for style in STYLES
    ]


def create_batch(
    user_id: str,
    mode: str,
    model: str,
    source_bytes: bytes,
    source_mime: str,
    items: List[ResultItem],
) -> Batch:
    """Persist a new batch and its source photo. All items start loading."""
    batch = Batch(
        batch_id=str(uuid.uuid4()),
        user_id=user_id,
        mode=mode,
        model=model,
        source_mime=source_mime,
        items=items,
    )
    BatchStore.save_source_image(batch.batch_id, source_bytes)
    BatchStore.save_batch(batch)
    logger.info(f"Batch {batch.batch_id} created: {len(items)} item(s), mode={mode}, model={model}")
    return batch


def _update_item(batch_id: str, item_id: str, **changes: Any) -> Optional[Batch]:
    """Load, mutate one item, recompute batch status and save."""
    batch = BatchStore.get_batch(batch_id)
    if not batch:
        logger.warning(f"Batch {batch_id} vanished while updating item {item_id}")
        return None
    item = batch.get_item(item_id)
    if not item:
        return None

    for key, value in changes.items():
        setattr(item, key, value)
    item.updated_at = time.time()
    if item.status == STATUS_ERROR and item.error:
        batch.error = item.error

    batch.refresh_status()
    BatchStore.save_batch(batch)
    return batch


async def _generate_item(
    batch: Batch,
    item: ResultItem,
    prompt: str,
    input_bytes: bytes,
    input_mime: str,
    config: GenAIConfig,
    edit_instruction: Optional[str] = None,
) -> None:
    """Run one generation request and record its outcome on the item."""
    try:
        image = await gemini_service.generate_image_with_gemini(
            prompt,
            base64.b64encode(input_bytes).decode("utf-8"),
            batch.model,
            config,
            mime_type=input_mime,
        )
        BatchStore.save_item_image(batch.batch_id, item.item_id, image.to_bytes())

        changes: Dict[str, Any] = {
            "status": STATUS_SUCCESS,
            "error": None,
            "mime_type": image.mime_type,
            "has_image": True,
        }
        changes["edits"] = item.edits + [edit_instruction] if edit_instruction is not None else []
        _update_item(batch.batch_id, item.item_id, **changes)

        await run_in_threadpool(
            studio_store.add_to_history,
            user_id=batch.user_id,
            image_url=image.data_url,
            prompt=prompt,
            style_title=item.title,
            emoji=item.emoji,
        )
        logger.info(f"Item {item.item_id} ({item.title}) succeeded in batch {batch.batch_id}")

    except Exception as e:
        logger.exception(f"Item {item.item_id} ({item.title}) failed in batch {batch.batch_id}:")
        _update_item(batch.batch_id, item.item_id, status=STATUS_ERROR, error=str(e) or "Generation failed")


async def run_batch(batch_id: str, config: GenAIConfig) -> None:
    """
    Background task: fan out one request per item and wait for all of them.
    Items finish in any order; a failure only affects its own item.
    """
    logger.info("=" * 60)
    logger.info(f"BATCH STARTED - {batch_id}")

    batch = BatchStore.get_batch(batch_id)
    source = BatchStore.get_source_image(batch_id)
    if not batch or source is None:
        logger.error(f"Batch {batch_id} or its source image is missing")
        return

    await asyncio.gather(*[
        _generate_item(batch, item, item.prompt, source, batch.source_mime, config)
        for item in batch.items
    ])

    batch = BatchStore.get_batch(batch_id)
    if batch:
        batch.refresh_status()
        BatchStore.save_batch(batch)
        ok = sum(1 for item in batch.items if item.status == STATUS_SUCCESS)
        logger.info(f"BATCH FINISHED - {batch_id}: {ok}/{len(batch.items)} succeeded")
    logger.info("=" * 60)


def mark_item_loading(batch: Batch, item_id: str, for_edit: bool = False) -> ResultItem:
    """
    Validate and flag an item as loading before scheduling retry/edit work.

    Raises:
        KeyError: unknown item
        BatchStateError: item is busy, or has no output to edit
    """
    item = batch.get_item(item_id)
    if not item:
        raise KeyError(item_id)
    if item.status == STATUS_LOADING:
        raise BatchStateError("Item is still rendering")
    if for_edit and not item.has_image:
        raise BatchStateError("Item has no image to edit")

    item.status = STATUS_LOADING
    item.error = None
    item.updated_at = time.time()
    batch.refresh_status()
    BatchStore.save_batch(batch)
    return item


async def retry_item(batch_id: str, item_id: str, config: GenAIConfig) -> None:
    """Regenerate an item from the source photo with its original prompt."""
    batch = BatchStore.get_batch(batch_id)
    source = BatchStore.get_source_image(batch_id)
    if not batch or source is None:
        logger.error(f"Cannot retry item {item_id}: batch {batch_id} is gone")
        return
    item = batch.get_item(item_id)
    if not item:
        return

    logger.info(f"Retrying item {item_id} ({item.title}) in batch {batch_id}")
    await _generate_item(batch, item, item.prompt, source, batch.source_mime, config)


async def edit_item(batch_id: str, item_id: str, instruction: str, config: GenAIConfig) -> None:
    """Refine an item's current output with an edit instruction."""
    batch = BatchStore.get_batch(batch_id)
    if not batch:
        logger.error(f"Cannot edit item {item_id}: batch {batch_id} is gone")
        return
    item = batch.get_item(item_id)
    current = BatchStore.get_item_image(batch_id, item_id)
    if not item or current is None:
        _update_item(batch_id, item_id, status=STATUS_ERROR, error="No image to edit")
        return

    logger.info(f"Editing item {item_id} ({item.title}) in batch {batch_id}")
    await _generate_item(
        batch,
        item,
        instruction,
        current,
        item.mime_type or "image/png",
        config,
        edit_instruction=instruction,
    )
