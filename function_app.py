import base64
import binascii
import itertools
import json
import logging
import os
import re
from typing import List, Optional, Tuple, Union

import azure.functions as func
from dotenv import load_dotenv
from pydantic import BaseModel

from mcq_core.config import get_api_keys
from mcq_core.pipeline import MCQPipeline

load_dotenv()
app = func.FunctionApp()

MAX_IMAGE_BYTES = 10 * 1024 * 1024
_DATA_URL = re.compile(r"^data:(.+?);base64,(.+)$", re.DOTALL)
_request_ids = itertools.count(1)
_pipeline: Optional[MCQPipeline] = None

ERROR_STATUS = {"extraction_failed": 422, "no_text": 400, "request_timeout": 504}


class ImageRequest(BaseModel):
    """JSON body for /api/solve-mcqs (multipart uploads use the 'image' field instead)."""
    image_base64: Optional[str] = None
    debug: Union[bool, str, None] = None
    models: Optional[List[str]] = None


def get_pipeline() -> MCQPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = MCQPipeline.from_config(os.getenv("MCQ_CONFIG", "config.yaml"))
    return _pipeline


def _json_response(payload: dict, status_code: int = 200) -> func.HttpResponse:
    return func.HttpResponse(json.dumps(payload), status_code=status_code, mimetype="application/json")


def parse_image_request(req: func.HttpRequest) -> Tuple[bytes, bool, Optional[List[str]]]:
    """
    Pull (image bytes, debug flag, requested models) out of a request.

    Raises:
        ValueError: With a client-facing message when the request is malformed
    """
    upload = req.files.get("image") if req.files else None
    if upload is not None:
        image = upload.read()
        debug = str(req.form.get("debug", "")).lower() == "true"
        models = req.form.getlist("models") if hasattr(req.form, "getlist") else None
        return image, debug, (models or None)

    try:
        body = ImageRequest.model_validate(req.get_json())
    except ValueError as e:
        # pydantic.ValidationError is a ValueError too
        raise ValueError(f"invalid request body: {e}") from e
    if not body.image_base64:
        raise ValueError("image is required either as multipart or base64 JSON")

    match = _DATA_URL.match(body.image_base64)
    if not match:
        raise ValueError("image_base64 must be a data URL")
    try:
        image = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("image_base64 is not valid base64") from e

    debug = body.debug is True or str(body.debug).lower() == "true"
    return image, debug, body.models


async def handle_solve_request(req: func.HttpRequest, pipeline: MCQPipeline) -> func.HttpResponse:
    req_id = str(next(_request_ids))
    try:
        image, debug, models = parse_image_request(req)
    except ValueError as e:
        return _json_response({"error": "invalid_request", "message": str(e)}, 400)
    if len(image) > MAX_IMAGE_BYTES:
        return _json_response({"error": "invalid_request", "message": "image exceeds 10MB limit"}, 413)

    result = await pipeline.process_image(image, debug=debug, requested_models=models, req_id=req_id)
    if "error" in result:
        return _json_response(result, ERROR_STATUS.get(result["error"], 500))
    return _json_response(result)


# pylint: disable=invalid-name
@app.route(route="solve-mcqs", methods=["POST"], auth_level=func.AuthLevel.ANONYMOUS)
async def SolveMCQs(req: func.HttpRequest) -> func.HttpResponse:
    """
    Answer the multiple choice questions in an uploaded image.
    Call via: POST https://<app-name>.azurewebsites.net/api/solve-mcqs
    """
    logging.info('Solve request received: %s', req.url)
    try:
        return await handle_solve_request(req, get_pipeline())
    except Exception as e:  # pylint: disable=broad-exception-caught
        logging.error('Solve request failed: %s', str(e))
        return _json_response({"error": "server_error", "message": str(e)}, 500)


# pylint: disable=invalid-name
@app.route(route="health", methods=["GET"], auth_level=func.AuthLevel.ANONYMOUS)
def Health(req: func.HttpRequest) -> func.HttpResponse:
    keys = get_api_keys()
    return _json_response({
        "ok": True,
        "ocr_key_present": bool(keys["ocr"]),
        "gemini_key_present": bool(keys["gemini"]),
        "cerebras_key_present": bool(keys["cerebras"]),
    })
