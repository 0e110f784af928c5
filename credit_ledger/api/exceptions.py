from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.errors import (
    AlreadyFinalizedError,
    AlreadyRefundedError,
    CreditError,
    InvalidInputError,
    InvalidRefundAmountError,
    PackageNotFoundError,
    ReservationNotFoundError,
    StoreUnavailableError,
)


def _error_body(exc: CreditError) -> dict:
    return {"detail": str(exc), "code": exc.code}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ReservationNotFoundError)
    async def reservation_not_found_handler(
        request: Request, exc: ReservationNotFoundError
    ) -> JSONResponse:
        return JSONResponse(status_code=404, content=_error_body(exc))

    @app.exception_handler(PackageNotFoundError)
    async def package_not_found_handler(
        request: Request, exc: PackageNotFoundError
    ) -> JSONResponse:
        return JSONResponse(status_code=404, content=_error_body(exc))

    @app.exception_handler(AlreadyFinalizedError)
    async def already_finalized_handler(
        request: Request, exc: AlreadyFinalizedError
    ) -> JSONResponse:
        return JSONResponse(status_code=409, content=_error_body(exc))

    @app.exception_handler(AlreadyRefundedError)
    async def already_refunded_handler(
        request: Request, exc: AlreadyRefundedError
    ) -> JSONResponse:
        return JSONResponse(status_code=409, content=_error_body(exc))

    @app.exception_handler(InvalidInputError)
    async def invalid_input_handler(request: Request, exc: InvalidInputError) -> JSONResponse:
        return JSONResponse(status_code=400, content=_error_body(exc))

    @app.exception_handler(InvalidRefundAmountError)
    async def invalid_refund_amount_handler(
        request: Request, exc: InvalidRefundAmountError
    ) -> JSONResponse:
        return JSONResponse(status_code=400, content=_error_body(exc))

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(
        request: Request, exc: StoreUnavailableError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=503,
            content=_error_body(exc),
            headers={"Retry-After": "1"},
        )
