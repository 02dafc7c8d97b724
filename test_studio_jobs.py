import asyncio
import os
import time
import uuid

import pytest

import studio_jobs
import studio_store
from gemini_service import GenAIConfig
from presets import STYLES
from studio_jobs import BatchStore, BatchStateError

CONFIG = GenAIConfig(api_key="test-key", base_url="http://gemini.invalid/v1")


def output_for(prompt):
    return f"out:{prompt}".encode()


def new_batch(mode=studio_jobs.MODE_PRESET, prompt="", source=b"source-photo"):
    user = f"user-{uuid.uuid4().hex[:8]}"
    items = studio_jobs.build_items(mode, prompt, "en")
    return studio_jobs.create_batch(user, mode, "gemini-2.5-flash-image", source, "image/jpeg", items)


def test_build_items_preset():
    items = studio_jobs.build_items(studio_jobs.MODE_PRESET)
    assert [i.style_id for i in items] == [s.id for s in STYLES]
    assert all(i.status == studio_jobs.STATUS_LOADING for i in items)
    assert len({i.item_id for i in items}) == len(items)


def test_build_items_custom():
    items = studio_jobs.build_items(studio_jobs.MODE_CUSTOM, "neon city", "en")
    assert len(items) == 1
    assert items[0].title == "Custom Creation"
    assert items[0].emoji == "🎨"
    assert items[0].prompt == "neon city"
    assert items[0].style_id.startswith("custom-")


def test_create_batch_persists_loading_items():
    batch = new_batch()
    loaded = BatchStore.get_batch(batch.batch_id)
    assert loaded.status == "running"
    assert loaded.user_id == batch.user_id
    assert [i.item_id for i in loaded.items] == [i.item_id for i in batch.items]
    assert BatchStore.get_source_image(batch.batch_id) == b"source-photo"


def test_run_batch_all_succeed(fake_gemini):
    batch = new_batch()
    asyncio.run(studio_jobs.run_batch(batch.batch_id, CONFIG))

    done = BatchStore.get_batch(batch.batch_id)
    assert done.status == "completed"
    assert done.error is None
    for item in done.items:
        assert item.status == studio_jobs.STATUS_SUCCESS
        assert item.has_image
        assert item.mime_type == "image/png"
        assert BatchStore.get_item_image(batch.batch_id, item.item_id) == output_for(item.prompt)

    assert len(fake_gemini.calls) == len(STYLES)
    assert all(call["input"] == b"source-photo" for call in fake_gemini.calls)
    assert all(call["mime_type"] == "image/jpeg" for call in fake_gemini.calls)
    assert len(studio_store.get_history(batch.user_id)) == len(STYLES)


def test_run_batch_failure_is_isolated(fake_gemini):
    fake_gemini.fail.add(STYLES[1].prompt)
    batch = new_batch()
    asyncio.run(studio_jobs.run_batch(batch.batch_id, CONFIG))

    done = BatchStore.get_batch(batch.batch_id)
    assert done.status == "completed"
    assert done.error == "API Error 500: boom"
    statuses = {item.style_id: item.status for item in done.items}
    assert statuses[STYLES[1].id] == studio_jobs.STATUS_ERROR
    assert sum(1 for s in statuses.values() if s == studio_jobs.STATUS_SUCCESS) == len(STYLES) - 1
    failed = done.get_item(done.items[1].item_id)
    assert not failed.has_image
    assert failed.error == "API Error 500: boom"


def test_retry_regenerates_from_source(fake_gemini):
    fake_gemini.fail.add("neon city")
    batch = new_batch(studio_jobs.MODE_CUSTOM, "neon city")
    asyncio.run(studio_jobs.run_batch(batch.batch_id, CONFIG))
    item_id = batch.items[0].item_id
    assert BatchStore.get_batch(batch.batch_id).items[0].status == studio_jobs.STATUS_ERROR

    fake_gemini.fail.clear()
    loaded = BatchStore.get_batch(batch.batch_id)
    studio_jobs.mark_item_loading(loaded, item_id)
    assert BatchStore.get_batch(batch.batch_id).status == "running"

    asyncio.run(studio_jobs.retry_item(batch.batch_id, item_id, CONFIG))
    item = BatchStore.get_batch(batch.batch_id).get_item(item_id)
    assert item.status == studio_jobs.STATUS_SUCCESS
    assert item.error is None
    assert fake_gemini.calls[-1]["input"] == b"source-photo"
    assert fake_gemini.calls[-1]["prompt"] == "neon city"


def test_edits_chain_on_previous_output(fake_gemini):
    batch = new_batch(studio_jobs.MODE_CUSTOM, "neon city")
    asyncio.run(studio_jobs.run_batch(batch.batch_id, CONFIG))
    item_id = batch.items[0].item_id

    studio_jobs.mark_item_loading(BatchStore.get_batch(batch.batch_id), item_id, for_edit=True)
    asyncio.run(studio_jobs.edit_item(batch.batch_id, item_id, "add rain", CONFIG))
    assert fake_gemini.calls[-1]["input"] == output_for("neon city")
    assert fake_gemini.calls[-1]["mime_type"] == "image/png"

    studio_jobs.mark_item_loading(BatchStore.get_batch(batch.batch_id), item_id, for_edit=True)
    asyncio.run(studio_jobs.edit_item(batch.batch_id, item_id, "make it night", CONFIG))
    assert fake_gemini.calls[-1]["input"] == output_for("add rain")

    item = BatchStore.get_batch(batch.batch_id).get_item(item_id)
    assert item.status == studio_jobs.STATUS_SUCCESS
    assert item.edits == ["add rain", "make it night"]
    assert BatchStore.get_item_image(batch.batch_id, item_id) == output_for("make it night")

    # A retry starts over from the source photo
    studio_jobs.mark_item_loading(BatchStore.get_batch(batch.batch_id), item_id)
    asyncio.run(studio_jobs.retry_item(batch.batch_id, item_id, CONFIG))
    item = BatchStore.get_batch(batch.batch_id).get_item(item_id)
    assert item.edits == []
    assert BatchStore.get_item_image(batch.batch_id, item_id) == output_for("neon city")


def test_failed_edit_keeps_previous_image(fake_gemini):
    batch = new_batch(studio_jobs.MODE_CUSTOM, "neon city")
    asyncio.run(studio_jobs.run_batch(batch.batch_id, CONFIG))
    item_id = batch.items[0].item_id

    fake_gemini.fail.add("ruin it")
    studio_jobs.mark_item_loading(BatchStore.get_batch(batch.batch_id), item_id, for_edit=True)
    asyncio.run(studio_jobs.edit_item(batch.batch_id, item_id, "ruin it", CONFIG))

    item = BatchStore.get_batch(batch.batch_id).get_item(item_id)
    assert item.status == studio_jobs.STATUS_ERROR
    assert item.has_image
    assert item.edits == []
    assert BatchStore.get_item_image(batch.batch_id, item_id) == output_for("neon city")


def test_mark_item_loading_guards(fake_gemini):
    fake_gemini.fail.add("neon city")
    batch = new_batch(studio_jobs.MODE_CUSTOM, "neon city")
    item_id = batch.items[0].item_id

    with pytest.raises(BatchStateError):
        studio_jobs.mark_item_loading(batch, item_id)

    asyncio.run(studio_jobs.run_batch(batch.batch_id, CONFIG))
    loaded = BatchStore.get_batch(batch.batch_id)
    with pytest.raises(BatchStateError):
        studio_jobs.mark_item_loading(loaded, item_id, for_edit=True)
    with pytest.raises(KeyError):
        studio_jobs.mark_item_loading(loaded, "000000000000")


def test_cleanup_old_batches():
    old = new_batch()
    fresh = new_batch()
    stale = time.time() - 48 * 3600
    for name in os.listdir(studio_jobs.BATCHES_DIR):
        if name.startswith(old.batch_id):
            os.utime(os.path.join(studio_jobs.BATCHES_DIR, name), (stale, stale))

    assert BatchStore.cleanup_old_batches(24) >= 2
    assert BatchStore.get_batch(old.batch_id) is None
    assert BatchStore.get_batch(fresh.batch_id) is not None
