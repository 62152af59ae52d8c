"""
People deduplication API endpoints.

Workspace membership is resolved upstream; handlers receive the
workspace id in the X-Workspace-Id header.
"""
import logging
import time
from typing import Optional

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel, Field

from api.services.duplicate_scanner import DuplicateScanner
from api.services.merge_executor import MergeExecutor
from api.services.resilience import (
    DedupError,
    InvalidPairError,
    PartialMergeFailure,
    PersonNotFoundError,
    StoreUnavailableError,
    user_friendly_error,
)
from api.services.sqlite_person_store import get_person_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/people", tags=["people"])


class PersonSummary(BaseModel):
    """Identifying fields shown when reviewing a duplicate pair."""
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None


class DuplicateCandidateResponse(BaseModel):
    """A scored duplicate pair."""
    id: str
    person_a: PersonSummary
    person_b: PersonSummary
    confidence: float
    reason: str


class DuplicatesResponse(BaseModel):
    """Response for duplicate scan."""
    data: list[DuplicateCandidateResponse]
    count: int


class PersonMergeRequest(BaseModel):
    """Request for merging two people."""
    keep_id: str = Field(..., min_length=1, description="ID of the person to keep (survivor)")
    merge_id: str = Field(..., min_length=1, description="ID of the person to absorb and delete")


class PersonMergeResponse(BaseModel):
    """Response for merge operation."""
    success: bool
    keep_id: str
    merged_id: str
    stats: dict


@router.get("/duplicates", response_model=DuplicatesResponse)
def get_duplicates(x_workspace_id: str = Header(..., min_length=1)):
    """
    Scan the workspace for likely duplicate people.

    Returns one candidate per pair, highest confidence first. The scan is
    recomputed on every call, so pairs involving already-merged people
    never reappear.
    """
    start_time = time.time()
    scanner = DuplicateScanner(get_person_store())

    try:
        candidates = scanner.find_duplicates(x_workspace_id)
    except StoreUnavailableError as e:
        logger.error(f"Duplicate scan failed for workspace {x_workspace_id}: {e}")
        raise HTTPException(status_code=503, detail=user_friendly_error(e, operation="scan"))
    except DedupError as e:
        logger.error(f"Duplicate scan failed for workspace {x_workspace_id}: {e}")
        raise HTTPException(status_code=500, detail=user_friendly_error(e, operation="scan"))

    elapsed = (time.time() - start_time) * 1000
    logger.info(f"get_duplicates() took {elapsed:.1f}ms ({len(candidates)} candidates)")

    return DuplicatesResponse(
        data=[
            DuplicateCandidateResponse(
                id=c.id,
                person_a=PersonSummary(**c.person_a.summary()),
                person_b=PersonSummary(**c.person_b.summary()),
                confidence=c.confidence,
                reason=c.reason,
            )
            for c in candidates
        ],
        count=len(candidates),
    )


@router.post("/merge", response_model=PersonMergeResponse)
def merge_people(request: PersonMergeRequest, x_workspace_id: str = Header(..., min_length=1)):
    """
    Merge two people into one record.

    The keep person survives; the merge person's interactions, notes,
    tags, social profiles and companies move to it and the merge person
    is deleted. The merge is all-or-nothing.
    """
    executor = MergeExecutor(get_person_store())

    try:
        result = executor.merge(request.keep_id, request.merge_id, x_workspace_id)
    except InvalidPairError as e:
        raise HTTPException(status_code=400, detail=user_friendly_error(e))
    except PersonNotFoundError as e:
        raise HTTPException(status_code=404, detail=user_friendly_error(e))
    except StoreUnavailableError as e:
        logger.error(f"Merge of {request.merge_id} into {request.keep_id} failed: {e}")
        raise HTTPException(status_code=503, detail=user_friendly_error(e))
    except PartialMergeFailure as e:
        raise HTTPException(status_code=500, detail=user_friendly_error(e))
    except DedupError as e:
        logger.error(f"Merge of {request.merge_id} into {request.keep_id} failed: {e}")
        raise HTTPException(status_code=500, detail=user_friendly_error(e))

    return PersonMergeResponse(
        success=result.success,
        keep_id=result.keep_id,
        merged_id=result.merged_id,
        stats=result.stats,
    )
