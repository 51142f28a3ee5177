"""Provider ingesters against mocked HTTP transports."""

import httpx
import pytest

from telemetry.config import SourceSettings, TrackingSettings
from telemetry.ingesters import (
    AdsbExchangeIngester,
    ChinaportsIngester,
    FlightRadar24Ingester,
    MarineTrafficIngester,
    VesselFinderIngester,
    build_ingesters,
)
from telemetry.schema import EntityClass

BOUNDS = {"min_latitude": 8.5, "max_latitude": 23.5, "min_longitude": 102.0, "max_longitude": 109.5}

FR24_PAYLOAD = {
    "full_count": 2,
    "version": 4,
    "7C1B72": [
        "7C1B72", 11.676549, 109.199291, 270, 35000, 450, "7700", "T-F", "A321",
        "VN-A321", 1717243200, "SGN", "HAN", "VN123", 0, -64, "HVN123",
    ],
    "ABC123": ["ABC123", 12.0, 108.0, 90, 0, 0, "1200", "T-F", "B738", "VN-B738", 1717243200,
               "DAD", "SGN", "VJ1", 1, 0, "VJC1"],
}


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def json_handler(payload, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(200, json=payload)
    return handler


def settings(**overrides) -> SourceSettings:
    return SourceSettings(**{"base_url": "http://mock.local/api", "api_key": "mock_key", **overrides})


class RecordingChannel:
    def __init__(self):
        self.records = []

    async def publish(self, records):
        self.records.extend(records)
        return len(records)


@pytest.mark.asyncio
async def test_flightradar24_positional_arrays():
    seen = []
    async with client_for(json_handler(FR24_PAYLOAD, seen)) as http:
        ingester = FlightRadar24Ingester(settings(default_quality=0.8), http_client=http, bounds=BOUNDS)
        records = await ingester.fetch()

    by_id = {r.entity_id: r for r in records}
    assert set(by_id) == {"7C1B72", "ABC123"}

    emergency = by_id["7C1B72"]
    assert emergency.entity_class == EntityClass.AIRCRAFT
    assert emergency.source == "flightradar24"
    assert (emergency.latitude, emergency.longitude) == (11.676549, 109.199291)
    assert emergency.altitude == 35000.0
    assert emergency.status_code == "7700"
    assert emergency.emergency is True
    assert emergency.callsign == "HVN123"
    assert emergency.registration == "VN-A321"
    assert emergency.on_ground is False
    assert emergency.quality == 0.8
    assert emergency.response_latency_ms is not None

    assert by_id["ABC123"].on_ground is True
    assert by_id["ABC123"].emergency is False

    assert seen[0].url.params["bounds"] == "23.5,8.5,102.0,109.5"
    assert "X-API-Key" not in seen[0].headers


@pytest.mark.asyncio
async def test_adsbexchange_accepts_ac_alias_and_trims_callsign():
    payload = {"ac": [
        {"hex": "888123", "lat": 10.5, "lon": 106.7, "alt_baro": "ground", "gs": 12,
         "track": 180, "squawk": "2000", "t": "A359", "r": "VN-A886", "flight": "HVN88   "},
        {"icao": "888124", "lat": 11.0, "lon": 107.0, "altitude": 12000, "speed": 300, "vr": 1200},
    ]}
    seen = []
    async with client_for(json_handler(payload, seen)) as http:
        ingester = AdsbExchangeIngester(settings(api_key="secret", default_quality=0.88), http_client=http)
        records = await ingester.fetch()

    assert seen[0].headers["X-API-Key"] == "secret"
    assert seen[0].headers["Authorization"] == "Bearer secret"

    first, second = records
    assert first.entity_id == "888123"
    assert first.callsign == "HVN88"
    assert first.on_ground is True
    assert first.altitude == 0.0
    assert first.entity_type == "A359"
    assert second.entity_id == "888124"
    assert second.altitude == 12000.0
    assert second.vertical_rate == 1200.0
    assert all(r.quality == 0.88 for r in records)


@pytest.mark.asyncio
async def test_marinetraffic_upper_case_keys():
    payload = {"data": [{
        "MMSI": 574001234, "LAT": 10.77, "LON": 106.70, "SPEED": 12.5, "COURSE": 45,
        "HEADING": 44, "NAVSTAT": 0, "SHIPNAME": "VINASHIP STAR", "SHIPTYPE": 70,
        "IMO": 9123456, "CALLSIGN": "3WAB", "FLAG": "VN", "DESTINATION": "HAIPHONG",
    }]}
    async with client_for(json_handler(payload)) as http:
        records = await MarineTrafficIngester(settings(), http_client=http).fetch()

    (vessel,) = records
    assert vessel.entity_id == "574001234"
    assert vessel.entity_class == EntityClass.VESSEL
    assert vessel.name == "VINASHIP STAR"
    assert vessel.status_code == "0"
    assert vessel.imo == "9123456"
    assert vessel.destination == "HAIPHONG"


@pytest.mark.asyncio
async def test_vesselfinder_results_array_with_short_keys():
    payload = {"results": [{
        "MMSI": "412345678", "lat": 20.1, "lon": 107.5, "sog": 8.0, "cog": 300,
        "hdg": 301, "status": 5, "name": "ZHE HAI 1", "type": "Cargo", "country": "CN",
    }]}
    async with client_for(json_handler(payload)) as http:
        records = await VesselFinderIngester(settings(), http_client=http).fetch()

    (vessel,) = records
    assert vessel.entity_id == "412345678"
    assert vessel.speed == 8.0
    assert vessel.course == 300.0
    assert vessel.heading == 301.0
    assert vessel.name == "ZHE HAI 1"
    assert vessel.flag == "CN"


@pytest.mark.asyncio
async def test_chinaports_flag_defaults_to_cn():
    payload = {"vessels": [{"mmsi": "413000001", "lat": 21.0, "lon": 108.3, "vesselName": "YU PENG"}]}
    async with client_for(json_handler(payload)) as http:
        records = await ChinaportsIngester(settings(), http_client=http).fetch()

    assert records[0].flag == "CN"
    assert records[0].name == "YU PENG"


@pytest.mark.asyncio
async def test_invalid_items_are_dropped_not_fatal():
    payload = {"data": [
        {"MMSI": "574000001", "LAT": 95.0, "LON": 106.0},
        {"MMSI": "", "LAT": 10.0, "LON": 106.0},
        {"MMSI": "574000003", "LAT": 10.0, "LON": 106.0},
    ]}
    async with client_for(json_handler(payload)) as http:
        ingester = MarineTrafficIngester(settings(), http_client=http)
        records = await ingester.fetch()

    assert [r.entity_id for r in records] == ["574000003"]
    assert ingester.stats["records_dropped"] == 2
    assert ingester.consecutive_failures == 0


@pytest.mark.asyncio
async def test_null_item_is_dropped_without_failing_the_batch():
    payload = {"ac": [
        None,
        {"hex": "888125", "lat": 10.0, "lon": 106.0, "alt_baro": 3000},
        "garbage",
    ]}
    async with client_for(json_handler(payload)) as http:
        ingester = AdsbExchangeIngester(settings(), http_client=http)
        records = await ingester.fetch()

    assert [r.entity_id for r in records] == ["888125"]
    assert ingester.stats["records_dropped"] == 2
    assert ingester.stats["failures"] == 0
    assert ingester.is_healthy()


@pytest.mark.asyncio
async def test_http_errors_count_towards_unhealthy():
    def handler(request):
        return httpx.Response(503)

    async with client_for(handler) as http:
        ingester = AdsbExchangeIngester(settings(), http_client=http, failure_threshold=3)
        for _ in range(2):
            assert await ingester.fetch() == []
        assert ingester.is_healthy()

        assert await ingester.fetch() == []

    assert not ingester.is_healthy()
    status = ingester.status()
    assert status["available"] is False
    assert status["consecutive_failures"] == 3
    assert "503" in status["last_error"]


@pytest.mark.asyncio
async def test_success_resets_failure_counter():
    responses = [httpx.Response(500), httpx.Response(500), httpx.Response(200, json={"ac": []})]

    def handler(request):
        return responses.pop(0)

    async with client_for(handler) as http:
        ingester = AdsbExchangeIngester(settings(), http_client=http)
        await ingester.fetch()
        await ingester.fetch()
        assert ingester.consecutive_failures == 2
        await ingester.fetch()

    assert ingester.consecutive_failures == 0
    assert ingester.last_success is not None


@pytest.mark.asyncio
async def test_transport_timeout_resolves_to_empty():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with client_for(handler) as http:
        ingester = FlightRadar24Ingester(settings(), http_client=http)
        assert await ingester.fetch() == []

    assert ingester.consecutive_failures == 1


@pytest.mark.asyncio
async def test_malformed_payload_resolves_to_empty():
    def handler(request):
        return httpx.Response(200, content=b"<html>rate limited</html>")

    async with client_for(handler) as http:
        ingester = ChinaportsIngester(settings(), http_client=http)
        assert await ingester.fetch() == []

    assert ingester.consecutive_failures == 1


@pytest.mark.asyncio
async def test_unexpected_payload_shape_resolves_to_empty():
    async with client_for(json_handler(["not", "a", "feed"])) as http:
        ingester = FlightRadar24Ingester(settings(), http_client=http)
        assert await ingester.fetch() == []

    assert ingester.consecutive_failures == 1


@pytest.mark.asyncio
async def test_disabled_source_is_not_a_failure():
    async with client_for(json_handler(FR24_PAYLOAD)) as http:
        ingester = FlightRadar24Ingester(settings(enabled=False), http_client=http)
        assert await ingester.fetch() == []

    assert ingester.consecutive_failures == 0
    assert not ingester.is_healthy()
    assert ingester.status()["enabled"] is False


@pytest.mark.asyncio
async def test_run_once_publishes_to_channel(fake_redis):
    channel = RecordingChannel()
    async with client_for(json_handler(FR24_PAYLOAD)) as http:
        ingester = FlightRadar24Ingester(settings(), http_client=http, redis_client=fake_redis)
        published = await ingester.run_once(channel)
        await ingester._update_status()

    assert published == 2
    assert len(channel.records) == 2
    status = fake_redis.hashes["ingester:flightradar24:status"]
    assert status["available"] == "True"
    assert status["records_published"] == "2"


@pytest.mark.asyncio
async def test_build_ingesters_covers_every_configured_source():
    async with httpx.AsyncClient() as http:
        ingesters = build_ingesters(TrackingSettings(), http)

    assert {i.SOURCE for i in ingesters} == {
        "flightradar24", "adsbexchange", "marinetraffic", "vesselfinder", "chinaports",
    }
    assert all(i.bounds["min_latitude"] == 8.5 for i in ingesters)
