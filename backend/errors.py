"""
backend/errors.py

Application error taxonomy. Each error is an HTTPException carrying its own
status code, so services can raise them directly (as the routers expect) and
FastAPI renders them as {"detail": "..."}.

 - NotFoundError (404): unknown portfolio / transaction / invoice
 - BadRequestError (400): invalid method, year, status transition
 - ExternalServiceError (502): chain or price API unreachable / malformed
 - StorageError (500): database failure surfaced to a caller
"""

from fastapi import HTTPException


class AppError(HTTPException):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(status_code=type(self).status_code, detail=detail)
        self.message = detail

    def __str__(self) -> str:
        return self.message


class NotFoundError(AppError):
    status_code = 404


class BadRequestError(AppError):
    status_code = 400


class ExternalServiceError(AppError):
    status_code = 502


class StorageError(AppError):
    status_code = 500
