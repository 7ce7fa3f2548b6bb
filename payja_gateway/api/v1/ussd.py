"""POST /session and POST /continue - USSD gateway callbacks"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from payja_gateway.api.dependencies import get_notification_dispatcher, get_session_controller
from payja_gateway.api.v1.schemas import (
    ContinueSessionRequest,
    ContinueSessionResponse,
    StartSessionRequest,
    StartSessionResponse,
)
from payja_gateway.domain.exceptions import (
    InputValidationError,
    SessionBusyError,
    SessionClosedError,
    SessionExpiredError,
    SessionNotFoundError,
)
from payja_gateway.domain.flow import SESSION_EXPIRED_MESSAGE, render_terminal
from payja_gateway.services.notifications import NotificationDispatcher
from payja_gateway.services.session_controller import SessionController

router = APIRouter()


@router.post("/session", response_model=StartSessionResponse)
async def start_session(
    request_body: StartSessionRequest,
    controller: SessionController = Depends(get_session_controller),
):
    """
    Open (or resume) the caller's session for a flow.

    The message starts with "CON " while the dialogue continues and "END "
    when it is already over (e.g. a registered customer dialing *899#).
    """
    try:
        reply = await controller.start(request_body.phone_number, request_body.flow)
    except InputValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return StartSessionResponse(session_id=reply.session_id, message=reply.message)


@router.post("/continue", response_model=ContinueSessionResponse)
async def continue_session(
    request_body: ContinueSessionRequest,
    background_tasks: BackgroundTasks,
    controller: SessionController = Depends(get_session_controller),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Feed the caller's latest input to the session.

    Flow:
    1. Return the cached response for a replayed request
    2. Take the session lease (waiting briefly if another request holds it)
    3. Advance the flow, running partner calls or decisions it asks for
    4. Persist the new state and response
    5. Deliver any queued SMS after responding
    """
    try:
        reply = await controller.continue_session(
            request_body.session_id,
            request_body.user_input,
            request_id=request_body.request_id,
        )
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SessionExpiredError:
        raise HTTPException(status_code=410, detail=render_terminal(SESSION_EXPIRED_MESSAGE))
    except SessionClosedError as e:
        raise HTTPException(status_code=410, detail=str(e))
    except SessionBusyError as e:
        logging.warning(f"Session busy: {e}", extra={"session_id": request_body.session_id})
        raise HTTPException(status_code=409, detail=str(e))

    if reply.notification_ids:
        background_tasks.add_task(dispatcher.dispatch, reply.notification_ids)

    return ContinueSessionResponse(message=reply.message)
