"""
Profile API routes.

These endpoints drive and inspect profile building:
- Running the pipeline for a session (fetch → insights → profile → compile)
- Reading and deleting a session's profile files
- Ranked automation suggestions
- Progress of the latest run
"""

import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query

from ambient.agent.compiler import AUTOMATION_KEY, COMPILED_KEYS, FULL_PROFILE_KEY, load_automation
from ambient.agent.engine import (
    MissingCredentialsError,
    NoEmailsError,
    PipelineConfig,
    ProfilePipeline,
)
from ambient.agent.priority import rank_automations
from ambient.agent.progress import ProgressStreams
from ambient.agent.schemas import BuildRequest
from ambient.api.dependencies import get_gmail, get_pipeline, get_progress_streams, get_store
from ambient.config import settings
from ambient.gmail.client import GmailClient
from ambient.logging.audit import audit
from ambient.storage.store import ProfileStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/profile", tags=["profile"])


@router.post("/build")
async def build_profile(
    request: BuildRequest,
    gmail: GmailClient = Depends(get_gmail),
    pipeline: ProfilePipeline = Depends(get_pipeline),
    streams: ProgressStreams = Depends(get_progress_streams),
):
    """
    Build or refine the profile of the mailbox owner.

    Request body (BuildRequest):
    {
        "session_id": "default",
        "sent_count": 10,
        "received_count": 10
    }

    The response always carries the run counts, so a degraded run (some
    emails or categories failed) is distinguishable from a clean one.
    """
    config = PipelineConfig.from_settings(
        settings,
        sent_count=request.sent_count,
        received_count=request.received_count,
    )
    progress = streams.start(request.session_id)

    audit.info(
        "profile.build.started",
        sent_count=config.sent_count,
        received_count=config.received_count,
    )

    try:
        result = await pipeline.run(request.session_id, gmail, config, progress)

    except MissingCredentialsError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except NoEmailsError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        logger.error(
            "profile.build.gmail_failed",
            extra={"action": "profile.build.gmail_failed", "status_code": status},
        )
        if status in (401, 403):
            raise HTTPException(status_code=401, detail="Gmail rejected the access token")
        raise HTTPException(status_code=502, detail=f"Gmail API error (HTTP {status})")
    except Exception as e:
        logger.error(
            "profile.build.failed",
            extra={"action": "profile.build.failed", "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail=f"Failed to build profile: {str(e)}")
    finally:
        progress.close()

    automations = result.automation.automations if result.automation else []
    return {
        "session_id": result.session_id,
        "status": "warning" if result.degraded else "success",
        "total_emails": result.total_emails,
        "successful_emails": result.successful_emails,
        "error_count": result.error_count,
        "total_categories": result.total_categories,
        "total_insights": result.total_insights,
        "profile_files": sorted(result.profile_files),
        "full_profile": result.full_profile.content if result.full_profile else None,
        "automation_summary": result.automation.summary if result.automation else None,
        "automations": [
            a.model_dump()
            for a in rank_automations(automations, limit=settings.automation_display_count)
        ],
    }


@router.get("/{session_id}/files")
async def list_files(session_id: str, store: ProfileStore = Depends(get_store)):
    """All stored files of a session: category documents plus compiled outputs."""
    files = store.list(session_id)
    if not files:
        raise HTTPException(status_code=404, detail="No profile for this session")

    full = files.get(FULL_PROFILE_KEY)
    return {
        "session_id": session_id,
        "categories": {
            name: file.model_dump(mode="json")
            for name, file in sorted(files.items())
            if name not in COMPILED_KEYS
        },
        "full_profile": full.content if full else None,
        "has_automation": AUTOMATION_KEY in files,
    }


@router.delete("/{session_id}/files")
async def delete_files(
    session_id: str,
    store: ProfileStore = Depends(get_store),
    streams: ProgressStreams = Depends(get_progress_streams),
):
    """Delete every stored file of a session."""
    removed = store.clear(session_id)
    streams.pop(session_id)
    audit.info("profile.deleted", removed=removed)
    return {"session_id": session_id, "removed": removed}


@router.get("/{session_id}/automations")
async def list_automations(
    session_id: str,
    limit: int = Query(default=settings.automation_display_count, ge=0, le=50),
    store: ProfileStore = Depends(get_store),
):
    """The session's automation suggestions, highest priority first."""
    analysis = load_automation(store.get(session_id, AUTOMATION_KEY))
    if analysis is None:
        raise HTTPException(status_code=404, detail="No automation analysis for this session")

    return {
        "session_id": session_id,
        "summary": analysis.summary,
        "total": len(analysis.automations),
        "automations": [a.model_dump() for a in rank_automations(analysis.automations, limit=limit)],
    }


@router.get("/{session_id}/progress")
async def get_progress(
    session_id: str,
    streams: ProgressStreams = Depends(get_progress_streams),
):
    """Per-stage progress of the session's latest run."""
    progress = streams.get(session_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="No run for this session")

    return {
        "session_id": session_id,
        "stages": progress.snapshot(),
        "events": [event.model_dump(mode="json") for event in progress.events()],
    }
