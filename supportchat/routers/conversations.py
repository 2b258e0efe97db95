"""REST routes for conversations, messages and analyses."""

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException, Request

from ..container import Container, get_container
from ..conversations import schemas
from ..core.auth import (
    AuthTokenConfigurationError,
    AuthTokenValidationError,
    resolve_session_context,
)
from ..core.errors import (
    NotFoundError,
    TransientExternalError,
    Unauthorized,
    ValidationError,
)
from ..core.session_context import SessionContext
from ..rate_limit import limiter, message_rate_limit

router = APIRouter(prefix="/api", tags=["conversations"])


def get_session_context(
    request: Request, container: Container = Depends(get_container)
) -> SessionContext:
    """Guest identity from ``X-Session-Id``; user and role from a Bearer token."""

    headers = {k.lower(): v for k, v in request.headers.items()}
    try:
        return resolve_session_context(headers, container.settings.auth)
    except AuthTokenConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except AuthTokenValidationError as exc:
        raise HTTPException(
            status_code=401, detail=str(exc), headers={"WWW-Authenticate": "Bearer"}
        ) from exc


@contextmanager
def _service_context() -> Iterator[None]:
    try:
        yield
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail={"errors": exc.errors}) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Unauthorized as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except TransientExternalError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


def _require_admin(context: SessionContext) -> None:
    if not context.is_admin:
        raise Unauthorized("Administrator role required")


@router.post("/conversations", response_model=schemas.Conversation, status_code=201)
def create_conversation(
    payload: schemas.ConversationCreate,
    context: SessionContext = Depends(get_session_context),
    container: Container = Depends(get_container),
) -> schemas.Conversation:
    with _service_context():
        return container.conversations.create_conversation(
            context, payload.metadata, session_id=payload.session_id
        )


@router.get("/conversations/{conversation_id}", response_model=schemas.ConversationDetail)
def get_conversation(
    conversation_id: int,
    context: SessionContext = Depends(get_session_context),
    container: Container = Depends(get_container),
) -> schemas.ConversationDetail:
    with _service_context():
        return container.conversations.get_detail(conversation_id, context)


@router.post("/conversations/{conversation_id}/end", response_model=schemas.Conversation)
def end_conversation(
    conversation_id: int,
    context: SessionContext = Depends(get_session_context),
    container: Container = Depends(get_container),
) -> schemas.Conversation:
    with _service_context():
        return container.conversations.end_conversation(conversation_id, context)


@router.post("/conversations/{conversation_id}/resume", response_model=schemas.Conversation)
def resume_conversation(
    conversation_id: int,
    context: SessionContext = Depends(get_session_context),
    container: Container = Depends(get_container),
) -> schemas.Conversation:
    with _service_context():
        return container.conversations.resume_conversation(conversation_id, context)


@router.get("/conversations/{conversation_id}/messages", response_model=schemas.MessageList)
def list_messages(
    conversation_id: int,
    context: SessionContext = Depends(get_session_context),
    container: Container = Depends(get_container),
) -> schemas.MessageList:
    with _service_context():
        items = container.conversations.list_messages(conversation_id, context)
    return schemas.MessageList(items=items, total=len(items))


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=schemas.Message,
    status_code=201,
)
@limiter.limit(message_rate_limit)
def create_message(
    request: Request,
    conversation_id: int,
    payload: schemas.MessageCreate,
    context: SessionContext = Depends(get_session_context),
    container: Container = Depends(get_container),
) -> schemas.Message:
    """Persist a message and fan it out.

    Guests and customers may only post ``user`` messages; operators with the
    admin role may post on behalf of the assistant or the company.
    """
    with _service_context():
        if payload.role != "user":
            _require_admin(context)
        return container.ingress.submit_message(
            conversation_id,
            payload.content,
            payload.role,
            payload.metadata,
            context=context,
        )


@router.get("/conversations/{conversation_id}/analyses", response_model=schemas.AnalysisList)
def list_analyses(
    conversation_id: int,
    context: SessionContext = Depends(get_session_context),
    container: Container = Depends(get_container),
) -> schemas.AnalysisList:
    with _service_context():
        items = container.conversations.list_analyses(conversation_id, context)
    return schemas.AnalysisList(items=items, total=len(items))


@router.post(
    "/conversations/{conversation_id}/analyses/trigger",
    response_model=schemas.AnalysisTriggerResponse,
    status_code=202,
)
def trigger_analysis(
    conversation_id: int,
    payload: schemas.AnalysisTriggerRequest | None = None,
    context: SessionContext = Depends(get_session_context),
    container: Container = Depends(get_container),
) -> schemas.AnalysisTriggerResponse:
    payload = payload or schemas.AnalysisTriggerRequest()
    with _service_context():
        container.conversations.get_conversation(conversation_id, context)
        job_id = container.dispatcher.dispatch_full_analysis(
            conversation_id,
            {"analysis_type": payload.analysis_type, "escalate": payload.escalate},
        )
    return schemas.AnalysisTriggerResponse(conversation_id=conversation_id, job_id=job_id)


@router.post("/analyses/batch", response_model=schemas.BatchAnalysisSummary)
def batch_analysis(
    payload: schemas.BatchAnalysisRequest,
    context: SessionContext = Depends(get_session_context),
    container: Container = Depends(get_container),
) -> schemas.BatchAnalysisSummary:
    with _service_context():
        _require_admin(context)
        return container.dispatcher.dispatch_batch(
            payload.conversation_ids, {"analysis_type": payload.analysis_type}
        )


@router.post("/analyses/{analysis_id}/escalate", response_model=schemas.EscalationResult)
def escalate_analysis(
    analysis_id: int,
    payload: schemas.EscalationRequest | None = None,
    context: SessionContext = Depends(get_session_context),
    container: Container = Depends(get_container),
) -> schemas.EscalationResult:
    payload = payload or schemas.EscalationRequest()
    with _service_context():
        _require_admin(context)
        return container.escalations.notify(analysis_id, payload.channel, forced=payload.force)
