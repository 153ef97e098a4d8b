"""
Latency probe loop run by the agent on every node.

Each sweep visits every peer in the hosts map, one at a time, and appends
exactly one JSON line per peer to the probe log, whatever the outcome.
"""

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional

import httpx

from crossregion.config.config import (
    FEATURE_ICMP_PROBE,
    PING_COUNT,
    PING_TIMEOUT,
    PROBE_PATH,
    PROBE_PORT,
    PROBE_TIMEOUT,
    SWEEP_INTERVAL,
)
from crossregion.models.probe_models import (
    REQUEST_ERROR,
    RESPONSE_ERROR,
    PingResult,
    ProbeFailure,
    ProbeStatus,
    ProbeSuccess,
)
from crossregion.models.region_models import HostsMap

# "rtt min/avg/max/mdev = 10.1/12.3/15.0/1.2 ms" (iputils) or "round-trip ..." (busybox/bsd)
PING_SUMMARY = re.compile(r"=\s*[\d.]+/([\d.]+)/[\d.]+")

Pinger = Callable[[str], Awaitable[Optional[PingResult]]]


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


async def ping_host(host: str, count: int = PING_COUNT, timeout: int = PING_TIMEOUT) -> Optional[PingResult]:
    """Runs the system ping; None when ping itself could not be run."""
    try:
        process = await asyncio.create_subprocess_exec(
            "ping", "-c", str(count), "-W", str(timeout), host,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await process.communicate()
    except OSError as e:
        logging.warning(f"Unable to run ping for {host}: {e}")
        return None
    match = PING_SUMMARY.search(stdout.decode(errors="replace"))
    if match is None:
        return PingResult(avg_ms=0.0, alive=False)
    return PingResult(avg_ms=float(match.group(1)), alive=True)


class ProbeLogWriter:
    """Append-only JSON-lines log, one entry per line."""

    def __init__(self, path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, entry) -> None:
        with open(self.path, "a") as log_file:
            log_file.write(entry.model_dump_json(exclude_none=True) + "\n")


class ProbeLoop:
    def __init__(
        self,
        region: str,
        hosts: HostsMap,
        writer: ProbeLogWriter,
        http_client: Optional[httpx.AsyncClient] = None,
        pinger: Optional[Pinger] = None,
        port: int = PROBE_PORT,
        path: str = PROBE_PATH,
        interval: float = SWEEP_INTERVAL,
    ):
        self.region = region
        self.hosts = dict(hosts)
        self.writer = writer
        self.port = port
        self.path = path
        self.interval = interval
        self._http_client = http_client
        if pinger is None and FEATURE_ICMP_PROBE:
            pinger = ping_host
        self._pinger = pinger
        self.sweeps_completed = 0
        self.entries_written = 0
        self.request_id = 0
        self._running = False

    @property
    def peers(self) -> list[tuple[str, str]]:
        """(region, address) of every other node, in a fixed order."""
        return [(region, host) for region, host in sorted(self.hosts.items()) if region != self.region]

    def status(self) -> ProbeStatus:
        return ProbeStatus(
            region=self.region,
            peers=[region for region, _ in self.peers],
            sweeps_completed=self.sweeps_completed,
            entries_written=self.entries_written,
            running=self._running,
        )

    async def _fetch(self, client: httpx.AsyncClient, target_region: str, host: str):
        url = f"http://{host}:{self.port}{self.path}"
        start = time.perf_counter()
        connected = False
        try:
            async with client.stream("GET", url) as response:
                connected = True
                response.raise_for_status()
                time_to_first_byte = None
                async for chunk in response.aiter_bytes():
                    if time_to_first_byte is None and chunk:
                        time_to_first_byte = _elapsed_ms(start)
                total_time = _elapsed_ms(start)
        except httpx.HTTPError as e:
            return ProbeFailure(
                kind=RESPONSE_ERROR if connected else REQUEST_ERROR,
                time_to_fail_ms=_elapsed_ms(start),
                region=self.region,
                target_region=target_region,
                error=f"{type(e).__name__}: {e}",
            )
        return ProbeSuccess(
            total_time_ms=total_time,
            time_to_first_byte_ms=total_time if time_to_first_byte is None else time_to_first_byte,
            region=self.region,
            target_region=target_region,
        )

    async def _ping(self, host: str) -> Optional[PingResult]:
        if self._pinger is None:
            return None
        return await self._pinger(host)

    async def probe(self, client: httpx.AsyncClient, target_region: str, host: str):
        """HTTP and ICMP measurements of one peer, merged into one entry."""
        self.request_id += 1
        request_id = self.request_id
        entry, ping = await asyncio.gather(
            self._fetch(client, target_region, host),
            self._ping(host),
        )
        update = {"request_id": request_id}
        if ping is not None:
            update["ping"] = ping
        return entry.model_copy(update=update)

    async def sweep(self) -> list:
        client = self._http_client or httpx.AsyncClient(timeout=PROBE_TIMEOUT)
        entries = []
        try:
            for target_region, host in self.peers:
                entry = await self.probe(client, target_region, host)
                self.writer.write(entry)
                self.entries_written += 1
                entries.append(entry)
        finally:
            if client is not self._http_client:
                await client.aclose()
        self.sweeps_completed += 1
        return entries

    async def run(self, stop_event: asyncio.Event) -> None:
        """Sweeps until `stop_event` is set, sleeping `interval` seconds between sweeps."""
        self._running = True
        logging.info(f"Probe loop started for {self.region} with peers {[r for r, _ in self.peers]}")
        try:
            while not stop_event.is_set():
                await self.sweep()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logging.info(f"Probe loop stopped after {self.sweeps_completed} sweeps")
