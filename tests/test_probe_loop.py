"""Tests for the latency probe loop and its log writer."""

import asyncio
import json

import httpx
import pytest

from crossregion.models.probe_models import REQUEST_ERROR, RESPONSE_ERROR, PingResult, ProbeFailure, ProbeSuccess
from crossregion.services.probe_loop import PING_SUMMARY, ProbeLogWriter, ProbeLoop

HOSTS = {
    "ap-northeast-1": "10.0.0.4",
    "eu-west-1": "10.0.0.1",
    "us-east-1": "10.0.0.2",
    "us-west-1": "10.0.0.3",
}


def handler(request: httpx.Request) -> httpx.Response:
    host = request.url.host
    if host == "10.0.0.2":
        raise httpx.ConnectError("connection refused", request=request)
    if host == "10.0.0.3":
        return httpx.Response(500, text="broken")
    return httpx.Response(200, text="ok")


async def fake_ping(host: str):
    return PingResult(avg_ms=12.5, alive=True)


@pytest.fixture
def writer(tmp_path):
    return ProbeLogWriter(tmp_path / "probe.log")


@pytest.fixture
def http_client():
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestProbeLoop:
    def test_peers_exclude_own_region_in_fixed_order(self, writer):
        loop = ProbeLoop("eu-west-1", HOSTS, writer)

        assert [region for region, _ in loop.peers] == ["ap-northeast-1", "us-east-1", "us-west-1"]

    @pytest.mark.asyncio
    async def test_sweep_emits_one_entry_per_peer(self, writer, http_client):
        loop = ProbeLoop("eu-west-1", HOSTS, writer, http_client=http_client, pinger=fake_ping)

        entries = await loop.sweep()

        assert len(entries) == 3
        lines = writer.path.read_text().splitlines()
        assert len(lines) == 3
        assert [json.loads(line)["target_region"] for line in lines] == [
            "ap-northeast-1", "us-east-1", "us-west-1",
        ]
        assert loop.sweeps_completed == 1
        assert loop.entries_written == 3

    @pytest.mark.asyncio
    async def test_sweep_classifies_outcomes(self, writer, http_client):
        loop = ProbeLoop("eu-west-1", HOSTS, writer, http_client=http_client, pinger=fake_ping)

        success, request_failure, response_failure = await loop.sweep()

        assert isinstance(success, ProbeSuccess)
        assert success.region == "eu-west-1"
        assert success.time_to_first_byte_ms <= success.total_time_ms
        assert success.ping == PingResult(avg_ms=12.5, alive=True)

        assert isinstance(request_failure, ProbeFailure)
        assert request_failure.kind == REQUEST_ERROR
        assert "ConnectError" in request_failure.error

        assert isinstance(response_failure, ProbeFailure)
        assert response_failure.kind == RESPONSE_ERROR
        assert response_failure.ping is not None

    @pytest.mark.asyncio
    async def test_request_ids_keep_counting_across_sweeps(self, writer, http_client):
        loop = ProbeLoop("eu-west-1", HOSTS, writer, http_client=http_client, pinger=fake_ping)

        await loop.sweep()
        await loop.sweep()

        ids = [json.loads(line)["request_id"] for line in writer.path.read_text().splitlines()]
        assert ids == [1, 2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_entries_without_ping_omit_it(self, writer, http_client):
        async def no_ping(host):
            return None

        loop = ProbeLoop("eu-west-1", {"eu-west-1": "x", "ap-northeast-1": "10.0.0.4"}, writer,
                         http_client=http_client, pinger=no_ping)

        await loop.sweep()

        record = json.loads(writer.path.read_text())
        assert record["status"] == "success"
        assert "ping" not in record

    @pytest.mark.asyncio
    async def test_run_sweeps_until_stopped(self, writer, http_client):
        loop = ProbeLoop("eu-west-1", HOSTS, writer, http_client=http_client, pinger=fake_ping, interval=0.01)
        stop_event = asyncio.Event()

        task = asyncio.create_task(loop.run(stop_event))
        for _ in range(200):
            if loop.sweeps_completed >= 2:
                break
            await asyncio.sleep(0.01)
        stop_event.set()
        await asyncio.wait_for(task, timeout=2)

        assert loop.sweeps_completed >= 2
        assert loop.entries_written == 3 * loop.sweeps_completed
        assert loop.status().running is False

    def test_ping_summary_parsing(self):
        iputils = "rtt min/avg/max/mdev = 10.101/12.345/15.000/1.200 ms"
        busybox = "round-trip min/avg/max = 0.070/0.081/0.093 ms"

        assert PING_SUMMARY.search(iputils).group(1) == "12.345"
        assert PING_SUMMARY.search(busybox).group(1) == "0.081"
        assert PING_SUMMARY.search("100% packet loss") is None
