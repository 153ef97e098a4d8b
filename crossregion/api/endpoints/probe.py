from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from crossregion.config.config import PROBE_BODY, PROBE_PATH
from crossregion.dependencies import get_probe_loop
from crossregion.models.probe_models import ProbeStatus
from crossregion.services.probe_loop import ProbeLoop

router = APIRouter()


# Timing target for the peers' probe loops; the body is irrelevant.
@router.get(PROBE_PATH, response_class=PlainTextResponse)
async def probe_target():
    return PROBE_BODY


@router.get("/probe/status", response_model=ProbeStatus)
async def probe_status(probe_loop: ProbeLoop = Depends(get_probe_loop)):
    """Sweep counters of the probe loop running on this node."""
    return probe_loop.status()
