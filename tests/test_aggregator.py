"""Buffer swap, timer and size triggers."""

import asyncio

import pytest

from telemetry.fusion.aggregator import FusionAggregator
from telemetry.fusion.config import FusionConfig
from telemetry.fusion.engine import FusionEngine
from telemetry.schema import EntityClass

from conftest import make_raw


class CollectingSink:
    def __init__(self):
        self.batches = []

    async def __call__(self, records):
        self.batches.append(list(records))

    @property
    def entity_ids(self):
        return [r.entity_id for batch in self.batches for r in batch]


def make_aggregator(sink, **overrides) -> FusionAggregator:
    config = FusionConfig(entity_class=EntityClass.AIRCRAFT, **overrides)
    return FusionAggregator(FusionEngine(config), sink=sink)


@pytest.mark.asyncio
async def test_flush_fuses_buffered_records_once():
    sink = CollectingSink()
    aggregator = make_aggregator(sink)

    await aggregator.add(make_raw(entity_id="A"))
    await aggregator.add(make_raw(entity_id="A", source="adsbexchange"))
    await aggregator.add(make_raw(entity_id="B"))
    assert aggregator.buffered == 3

    result = await aggregator.flush()

    assert sorted(r.entity_id for r in result.fused) == ["A", "B"]
    assert sorted(sink.entity_ids) == ["A", "B"]
    assert aggregator.buffered == 0

    empty = await aggregator.flush()
    assert empty.fused == []
    assert len(sink.batches) == 1


@pytest.mark.asyncio
async def test_records_arriving_during_a_pass_land_in_next_generation():
    aggregator = None
    sink_calls = []

    async def sink(records):
        sink_calls.append([r.entity_id for r in records])
        if len(sink_calls) == 1:
            await aggregator.add(make_raw(entity_id="LATE"))

    aggregator = make_aggregator(sink)
    await aggregator.add(make_raw(entity_id="EARLY"))

    await aggregator.flush()
    assert aggregator.buffered == 1
    generation = aggregator.generation

    await aggregator.flush()

    assert sink_calls == [["EARLY"], ["LATE"]]
    assert aggregator.generation == generation + 1


@pytest.mark.asyncio
async def test_full_buffer_triggers_immediate_pass():
    sink = CollectingSink()
    aggregator = make_aggregator(sink, max_batch_size=3)

    for entity_id in ("A", "B", "C"):
        await aggregator.add(make_raw(entity_id=entity_id))
    assert aggregator.buffered == 0

    await aggregator.drain()

    assert sorted(sink.entity_ids) == ["A", "B", "C"]
    assert aggregator.get_stats()["size_triggers"] == 1


@pytest.mark.asyncio
async def test_timer_runs_passes():
    sink = CollectingSink()
    aggregator = make_aggregator(sink, interval_s=0.01)
    await aggregator.add(make_raw(entity_id="A"))

    task = asyncio.create_task(aggregator.run())
    for _ in range(50):
        if sink.batches:
            break
        await asyncio.sleep(0.01)
    aggregator.stop()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert sink.entity_ids == ["A"]


@pytest.mark.asyncio
async def test_wrong_entity_class_is_rejected():
    sink = CollectingSink()
    aggregator = make_aggregator(sink)

    await aggregator.add(make_raw(entity_id="574001234", source="marinetraffic", entity_class=EntityClass.VESSEL))

    assert aggregator.buffered == 0
    assert aggregator.get_stats()["records_rejected"] == 1


@pytest.mark.asyncio
async def test_sink_failure_is_counted_not_raised():
    async def broken_sink(records):
        raise RuntimeError("downstream unavailable")

    aggregator = make_aggregator(broken_sink)
    await aggregator.add(make_raw(entity_id="A"))

    result = await aggregator.flush()

    assert len(result.fused) == 1
    assert aggregator.get_stats()["sink_errors"] == 1
