from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.logging import get_logger
from app.services.bitrix24.errors import Bitrix24Error

logger = get_logger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(Bitrix24Error)
    async def _bitrix24_error_handler(request: Request, exc: Bitrix24Error):
        logger.info(
            "bitrix24_request_failed path=%s code=%s status=%s",
            request.url.path,
            exc.code,
            exc.status_code,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
