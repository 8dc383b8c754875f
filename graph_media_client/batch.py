import json
from enum import Enum
from typing import Any, Literal, Mapping, Optional, Sequence, Union
from urllib.parse import urlencode

from pydantic import BaseModel, model_validator

from graph_media_client.errors import (
    ApiError,
    DecodeFailure,
    GraphClientError,
    UnexpectedShape,
    rate_limit_document,
)

Params = Sequence[tuple[str, str]]


class ResponseOnSuccess(Enum):
    omit = True
    preserve = False


class BatchItem(BaseModel):
    method: Literal["GET", "DELETE", "POST", "PUT"]
    relative_url: str
    name: Optional[str] = None
    omit_response_on_success: Optional[bool] = None
    body: Optional[str] = None

    @model_validator(mode="after")
    def _check_name_pairing(self) -> "BatchItem":
        if (self.name is None) != (self.omit_response_on_success is None):
            raise ValueError("name and omit_response_on_success go together")
        if self.body is not None and self.method not in ("POST", "PUT"):
            raise ValueError(f"{self.method} batch items cannot carry a body")
        return self


def relative_url_with_params(relative_url: str, params: Params) -> str:
    if not params:
        return relative_url
    return f"{relative_url}?{urlencode(list(params), safe=',')}"


class BatchRequest(BaseModel):
    items: list[BatchItem]

    @property
    def batch_count(self) -> int:
        return len(self.items)

    def to_list(self) -> list[dict]:
        return [item.model_dump(exclude_none=True) for item in self.items]

    def to_json(self) -> str:
        return json.dumps(self.to_list(), separators=(",", ":"))

    def __str__(self) -> str:
        return self.to_json()


class Builder:
    """Collects batch items in order.

    The plain verbs return the builder for chaining; the ``add_*`` variants
    are for use inside loops.
    """

    def __init__(self):
        self.items: list[BatchItem] = []

    def add(
        self,
        method: str,
        relative_url: str,
        params: Params = (),
        *,
        name: Optional[str] = None,
        response_on_success: Optional[ResponseOnSuccess] = None,
        body: Union[str, Mapping[str, str], None] = None,
    ) -> None:
        omit = None
        if name is not None:
            omit = (response_on_success or ResponseOnSuccess.preserve).value
        if isinstance(body, Mapping):
            body = urlencode(list(body.items()))
        self.items.append(
            BatchItem(
                method=method,
                relative_url=relative_url_with_params(relative_url, params),
                name=name,
                omit_response_on_success=omit,
                body=body,
            )
        )

    def add_get(self, relative_url: str, params: Params = ()) -> None:
        self.add("GET", relative_url, params)

    def get(self, relative_url: str, params: Params = ()) -> "Builder":
        self.add_get(relative_url, params)
        return self

    def add_get_with_name(
        self,
        name: str,
        relative_url: str,
        params: Params = (),
        response_on_success: ResponseOnSuccess = ResponseOnSuccess.preserve,
    ) -> None:
        self.add(
            "GET",
            relative_url,
            params,
            name=name,
            response_on_success=response_on_success,
        )

    def get_with_name(
        self,
        name: str,
        relative_url: str,
        params: Params = (),
        response_on_success: ResponseOnSuccess = ResponseOnSuccess.preserve,
    ) -> "Builder":
        self.add_get_with_name(name, relative_url, params, response_on_success)
        return self

    def add_delete(self, relative_url: str, params: Params = ()) -> None:
        self.add("DELETE", relative_url, params)

    def delete(self, relative_url: str, params: Params = ()) -> "Builder":
        self.add_delete(relative_url, params)
        return self

    def add_post(self, relative_url: str, body=None, **kwargs) -> None:
        self.add("POST", relative_url, body=body, **kwargs)

    def post(self, relative_url: str, body=None, **kwargs) -> "Builder":
        self.add_post(relative_url, body, **kwargs)
        return self

    def add_put(self, relative_url: str, body=None, **kwargs) -> None:
        self.add("PUT", relative_url, body=body, **kwargs)

    def put(self, relative_url: str, body=None, **kwargs) -> "Builder":
        self.add_put(relative_url, body, **kwargs)
        return self

    def build(self) -> BatchRequest:
        request = BatchRequest(items=list(self.items))
        try:
            request.to_json()
        except (TypeError, ValueError) as e:
            raise GraphClientError(f"batch could not be encoded: {e}") from e
        return request


def _shape_entry(entry: Any) -> Any:
    # null means the platform timed out the item or it asked for omission
    if entry is None:
        return None
    body = entry.get("body") if isinstance(entry, dict) else None
    if not isinstance(body, str):
        return UnexpectedShape(entry, "batch entry without body")
    try:
        document = json.loads(body)
    except ValueError as e:
        error = DecodeFailure(f"invalid json in batch body: {e}", entry)
        error.__cause__ = e
        return error
    if isinstance(document, dict) and isinstance(document.get("error"), dict):
        return ApiError(document)
    return document


def shape_batch_response(value: Any) -> list[Any]:
    """Split a batch response into per item results.

    Each position holds either the decoded body (``None`` for omitted items)
    or the :class:`GraphClientError` for that item, mirroring
    ``asyncio.gather(..., return_exceptions=True)``. A malformed entry never
    aborts the remaining ones.
    """
    if not isinstance(value, list):
        raise UnexpectedShape(value, "batch response is not an array")
    return [_shape_entry(entry) for entry in value]


def rate_limited_batch_response(count: int) -> list[dict]:
    body = json.dumps(rate_limit_document())
    return [{"code": 400, "headers": [], "body": body} for _ in range(count)]
