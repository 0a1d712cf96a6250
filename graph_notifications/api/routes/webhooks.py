import json
import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from graph_notifications.api.dependencies import get_runtime
from graph_notifications.core.errors import ValidationError
from graph_notifications.services.webhook_service import extract_validation_token

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.api_route("/graph", methods=["GET", "POST"])
async def receive_graph_notifications(request: Request) -> Response:
    validation_token = extract_validation_token(request.query_params)
    if validation_token is not None:
        logger.info("Graph validation handshake path=%s", str(request.url.path))
        return PlainTextResponse(validation_token, status_code=status.HTTP_200_OK)

    raw_body = await request.body()
    if not raw_body.strip():
        if request.method == "GET":
            return JSONResponse({"success": True})
        return _error_response("Notification payload is empty.")

    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Graph webhook body is not valid JSON path=%s", str(request.url.path))
        return _error_response("Request body must be valid JSON.")

    validation_token = extract_validation_token({}, payload)
    if validation_token is not None:
        logger.info("Graph validation handshake via body path=%s", str(request.url.path))
        return PlainTextResponse(validation_token, status_code=status.HTTP_200_OK)

    try:
        # Handshakes never build the runtime.
        runtime = get_runtime(request)
        acknowledgement = runtime.webhook_service.handle_batch(payload)
    except ValidationError as exc:
        logger.warning("Graph webhook rejected path=%s error=%s", str(request.url.path), exc)
        return _error_response(str(exc))
    except Exception:
        logger.exception("Graph webhook processing failed path=%s", str(request.url.path))
        return _error_response("Failed to process notifications.")

    return JSONResponse(acknowledgement.model_dump())


def _error_response(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": message},
    )
