"""OpenAPI ``responses`` entries for the pipeline's error envelope.

Each documented status gets an example built from the exception the API
actually raises for it, so the docs show real messages.
"""

from typing import Any

from pricerun.core.errors import InvalidState, RunNotFound
from pricerun.schemas.common import ErrorOut

_EXAMPLE_RUN_ID = "8mK3nTqXqz7Jt3yZxS4aVb"
_EXAMPLE_REQUEST_ID = "8d8f2b00-6c79-4a45-8ff4-b0a5f2bc4bc2"


def _invalid_state_example() -> dict[str, Any]:
    error = InvalidState(f"Run {_EXAMPLE_RUN_ID} cannot be queued from status APPLYING")
    return {"code": error.code, "message": str(error), "path": f"/runs/{_EXAMPLE_RUN_ID}/queue", "details": None}


def _not_found_example() -> dict[str, Any]:
    error = RunNotFound(_EXAMPLE_RUN_ID)
    return {"code": error.code, "message": str(error), "path": f"/runs/{_EXAMPLE_RUN_ID}", "details": None}


def _validation_example() -> dict[str, Any]:
    return {
        "code": "validation_error",
        "message": "Validation failed",
        "path": "/rules",
        "details": [
            {
                "field": "body.transform.op",
                "message": "Input tag 'divide' found using 'op' does not match any of the expected tags",
                "type": "union_tag_invalid",
            }
        ],
    }


def _internal_example() -> dict[str, Any]:
    return {"code": "internal_error", "message": "Internal server error", "path": "/outbox/run", "details": None}


_EXAMPLES = {
    400: ("Run is not in a state that allows this operation", _invalid_state_example),
    404: ("Rule, run or target not found in the caller's scope", _not_found_example),
    422: ("Request failed validation", _validation_example),
    500: ("Unexpected server error", _internal_example),
}


def error_responses(*status_codes: int) -> dict[int, dict]:
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        description, build = _EXAMPLES[status_code]
        example = {"request_id": _EXAMPLE_REQUEST_ID, **build()}
        responses[status_code] = {
            "model": ErrorOut,
            "description": description,
            "content": {"application/json": {"example": {"error": example}}},
        }
    return responses
