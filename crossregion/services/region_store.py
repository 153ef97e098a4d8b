from contextlib import contextmanager
from typing import Iterable, Iterator

from crossregion.models.region_models import HostsMap, RegionState
from crossregion.services.errors import RegionOwnershipError


class RegionStateStore:
    """
    In-memory RegionState per region.

    States are immutable; ``update`` swaps in a new record in one assignment.
    ``owned_by`` marks the single step allowed to touch a region at a time,
    so two concurrent steps on the same region fail loudly instead of racing.
    """

    def __init__(self, regions: Iterable[str]):
        self._states: dict[str, RegionState] = {region: RegionState(region=region) for region in regions}
        self._owners: dict[str, str] = {}

    def get(self, region: str) -> RegionState:
        return self._states[region]

    def update(self, region: str, **changes) -> RegionState:
        state = self._states[region].model_copy(update=changes)
        self._states[region] = state
        return state

    def owner(self, region: str):
        return self._owners.get(region)

    @contextmanager
    def owned_by(self, region: str, step: str) -> Iterator[RegionState]:
        if region not in self._states:
            raise KeyError(f"Unknown region {region}")
        current = self._owners.get(region)
        if current is not None:
            raise RegionOwnershipError(f"{region} is owned by '{current}', '{step}' cannot claim it")
        self._owners[region] = step
        try:
            yield self._states[region]
        finally:
            del self._owners[region]

    def hosts_map(self) -> HostsMap:
        """Region -> public address for every region with a running node."""
        hosts: HostsMap = {}
        for region in sorted(self._states):
            address = self._states[region].running_address()
            if address:
                hosts[region] = address
        return hosts
