"""End-to-end wiring in dry-run mode (no Redis/PostgreSQL)."""

import httpx
import pytest

from telemetry.channel import LocalRawChannel, RedisRawChannel
from telemetry.config import SourceSettings, TrackingSettings
from telemetry.ingesters import FlightRadar24Ingester, MarineTrafficIngester
from telemetry.schema import EntityClass
from telemetry.service import TrackingService

from conftest import RecordingDelivery, make_raw

FR24_PAYLOAD = {
    "full_count": 1,
    "7C1B72": ["7C1B72", 11.68, 109.20, 270, 35000, 450, "2000", "T-F", "A321",
               "VN-A321", 0, "SGN", "HAN", "VN123", 0, 0, "HVN123"],
}
MT_PAYLOAD = {"data": [{"MMSI": "574001234", "LAT": 10.77, "LON": 106.70, "SHIPNAME": "VINASHIP STAR"}]}


def mock_http():
    def handler(request: httpx.Request) -> httpx.Response:
        if "exportvessels" in request.url.path:
            return httpx.Response(200, json=MT_PAYLOAD)
        return httpx.Response(200, json=FR24_PAYLOAD)
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_dry_run_flows_from_ingester_to_subscriber():
    delivery = RecordingDelivery()
    async with mock_http() as http:
        source = SourceSettings(base_url="http://mock.local")
        ingesters = [
            FlightRadar24Ingester(source, http_client=http),
            MarineTrafficIngester(source, http_client=http),
        ]
        service = TrackingService(TrackingSettings(), http_client=http, delivery=delivery, ingesters=ingesters)
        assert isinstance(service.channel, LocalRawChannel)

        service.notifier.subscribe_area("s1", 8.5, 23.5, 102.0, 109.5)
        for ingester in ingesters:
            await ingester.run_once(service.channel)

        assert service.aggregators[EntityClass.AIRCRAFT].buffered == 1
        assert service.aggregators[EntityClass.VESSEL].buffered == 1

        for aggregator in service.aggregators.values():
            await aggregator.flush()
        await service.pipeline.drain()

    assert set(service.store.current) == {"7C1B72", "574001234"}
    assert len(service.store.history) == 2
    assert sorted(m["data"]["entity_id"] for m in delivery.to("s1")) == ["574001234", "7C1B72"]

    stats = service.get_stats()
    assert stats["dry_run"] is True
    assert stats["pipeline"]["persisted"] == 2


@pytest.mark.asyncio
async def test_start_and_stop_flushes_buffered_records():
    service = TrackingService(TrackingSettings(), delivery=RecordingDelivery(), ingesters=[])
    await service.start()
    assert service.running

    await service.aggregators[EntityClass.AIRCRAFT].add(make_raw(entity_id="LATE"))

    await service.stop()

    assert not service.running
    assert "LATE" in service.store.current


def test_redis_mode_uses_stream_channel(fake_redis):
    ingester = FlightRadar24Ingester(SourceSettings(base_url="http://mock.local"))
    service = TrackingService(TrackingSettings(), redis_client=fake_redis, ingesters=[ingester])

    assert isinstance(service.channel, RedisRawChannel)
    assert service.channel.streams_for(EntityClass.AIRCRAFT) == ["raw:aircraft:flightradar24"]
    assert not service.dry_run


@pytest.mark.asyncio
async def test_status_hash_is_written(fake_redis):
    service = TrackingService(TrackingSettings(), redis_client=fake_redis, ingesters=[])
    await service._update_status()

    status = fake_redis.hashes["tracking:status"]
    assert status["tracked_aircraft"] == "0"
    assert status["total_sources"] == "0"
