from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status

from ..core.logging import get_logger
from ..dependencies import get_heartbeat, get_thread_runner
from ..orchestration.exceptions import GraphCancelledError, GraphError
from ..orchestration.state import HierarchicalThreadState
from ..schemas.threads import ThreadCreateRequest, ThreadDetail, ThreadMessageRequest
from ..services.execution import HeartbeatService, ThreadRunner, ThreadRunResult

logger = get_logger(name=__name__)

router = APIRouter()

Runner = ThreadRunner[HierarchicalThreadState]


async def _run(runner: Runner, prompt: str, *, thread_id: str | None, channel: str | None) -> ThreadRunResult:
    try:
        return await runner.run(prompt, thread_id=thread_id, channel=channel)
    except GraphCancelledError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except GraphError as exc:
        logger.error("thread_run_failed", thread_id=thread_id, error=str(exc))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


@router.post("/threads", response_model=ThreadRunResult, tags=["threads"])
async def create_thread(
    payload: ThreadCreateRequest,
    runner: Runner = Depends(get_thread_runner),
) -> ThreadRunResult:
    return await _run(runner, payload.prompt, thread_id=None, channel=payload.channel)


@router.post("/threads/{thread_id}/messages", response_model=ThreadRunResult, tags=["threads"])
async def post_message(
    thread_id: str,
    payload: ThreadMessageRequest,
    runner: Runner = Depends(get_thread_runner),
) -> ThreadRunResult:
    if await runner.get(thread_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")
    return await _run(runner, payload.prompt, thread_id=thread_id, channel=payload.channel)


@router.get("/threads/{thread_id}", response_model=ThreadDetail, tags=["threads"])
async def get_thread(thread_id: str, runner: Runner = Depends(get_thread_runner)) -> ThreadDetail:
    state = await runner.get(thread_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")
    return ThreadDetail.from_state(state)


@router.delete("/threads/{thread_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["threads"])
async def delete_thread(thread_id: str, runner: Runner = Depends(get_thread_runner)) -> Response:
    await runner.forget(thread_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/heartbeat", response_model=ThreadRunResult, tags=["heartbeat"])
async def trigger_heartbeat(heartbeat: HeartbeatService = Depends(get_heartbeat)) -> ThreadRunResult:
    try:
        result = await heartbeat.trigger()
    except GraphError as exc:
        logger.error("heartbeat_trigger_failed", error=str(exc))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    if result is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Heartbeat cycle already running")
    return result
