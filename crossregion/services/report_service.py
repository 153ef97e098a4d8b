import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional

from pydantic import ValidationError

from crossregion.models.probe_models import ProbeSuccess, ReportMatrix, log_entry_adapter

UNAVAILABLE = "n/a"


@dataclass
class PairStats:
    samples: int = 0
    http_total: float = 0.0
    ping_total: int = 0

    def add(self, entry: ProbeSuccess) -> None:
        self.samples += 1
        self.http_total += entry.total_time_ms
        self.ping_total += ping_as_int(entry)

    @property
    def avg_http(self) -> float:
        return self.http_total / self.samples

    @property
    def avg_ping(self) -> float:
        return self.ping_total / self.samples


def ping_as_int(entry: ProbeSuccess) -> int:
    """The entry's ping average as an integer; missing or invalid counts as zero."""
    if entry.ping is None:
        return 0
    try:
        return int(entry.ping.avg_ms)
    except (TypeError, ValueError, OverflowError):
        return 0


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def parse_log(text: str) -> list:
    """Parses a probe log, skipping empty, truncated or malformed lines."""
    entries = []
    skipped = 0
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(log_entry_adapter.validate_json(line))
        except ValidationError:
            skipped += 1
    if skipped:
        logging.info(f"Skipped {skipped} unparseable log lines")
    return entries


def aggregate(entries: Iterable) -> dict[tuple[str, str], PairStats]:
    """Groups successful entries by (source region, target region)."""
    stats: dict[tuple[str, str], PairStats] = {}
    for entry in entries:
        if not isinstance(entry, ProbeSuccess):
            continue
        stats.setdefault((entry.region, entry.target_region), PairStats()).add(entry)
    return stats


def format_cell(pair: Optional[PairStats]) -> Optional[str]:
    if pair is None or pair.samples == 0:
        return None
    return f"{round_half_up(pair.avg_ping)}/{round_half_up(pair.avg_http)}"


def build_matrix(regions: Iterable[str], stats: dict[tuple[str, str], PairStats]) -> ReportMatrix:
    ordered = sorted(set(regions))
    cells = {
        source: {target: format_cell(stats.get((source, target))) for target in ordered}
        for source in ordered
    }
    return ReportMatrix(regions=ordered, cells=cells)


def render_table(matrix: ReportMatrix) -> str:
    """Renders the matrix as a fixed-width text table; rows are sources, columns targets."""
    corner = "from \\ to"
    header = [corner] + matrix.regions
    rows = [
        [source] + [matrix.cell(source, target) or UNAVAILABLE for target in matrix.regions]
        for source in matrix.regions
    ]
    widths = [max(len(row[i]) for row in [header] + rows) for i in range(len(header))]

    def line(values):
        return " | ".join(value.ljust(width) for value, width in zip(values, widths)).rstrip()

    separator = "-+-".join("-" * width for width in widths)
    return "\n".join([line(header), separator] + [line(row) for row in rows]) + "\n"
