from contextlib import AsyncExitStack, asynccontextmanager

import aioboto3
from fastapi import HTTPException, Request

from crossregion.services.probe_loop import ProbeLoop


@asynccontextmanager
async def open_ec2_clients(regions):
    """Yields {region: aioboto3 EC2 client}, closing every client on exit."""
    async with AsyncExitStack() as stack:
        clients = {}
        for region in regions:
            session = aioboto3.Session(region_name=region)
            clients[region] = await stack.enter_async_context(session.client("ec2"))
        yield clients


def get_probe_loop(request: Request) -> ProbeLoop:
    probe_loop = getattr(request.app.state, "probe_loop", None)
    if probe_loop is None:
        raise HTTPException(status_code=503, detail="Probe loop is not configured")
    return probe_loop
