from fastapi import Request

from app.db import get_db
from app.services.bitrix24.install import fold_form_fields


async def get_callback_params(request: Request) -> dict:
    """Body of a portal callback as a dict.

    The portal posts form-encoded data with ``auth[...]`` keys; tools and
    tests may send JSON instead. Query parameters fill in whatever the body
    does not carry.
    """
    content_type = request.headers.get("content-type", "")
    params: dict = dict(request.query_params)
    if "application/json" in content_type:
        body = await request.json()
        if isinstance(body, dict):
            params.update(body)
    elif "form" in content_type:
        form = await request.form()
        params.update(fold_form_fields(form.multi_items()))
    return params


__all__ = [
    "get_db",
    "get_callback_params",
]
