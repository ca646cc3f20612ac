"""Map integration errors to HTTP responses with short user-facing messages."""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from blingsync.bling.errors import (
    AccessDeniedError,
    AuthExchangeError,
    BlingError,
    ConfigurationError,
    FetchError,
    InvalidTransitionError,
    RefreshError,
    SyncAlreadyRunningError,
)
from blingsync.sync.logs import SyncLogNotFound

logger = logging.getLogger(__name__)

# Checked in order; subclasses before BlingError
_ERROR_RESPONSES = [
    (AccessDeniedError, 403, "Acesso negado à empresa"),
    (ConfigurationError, 404, "Configuração Bling não encontrada"),
    (SyncAlreadyRunningError, 409, "Já existe uma sincronização em andamento para esta empresa"),
    (InvalidTransitionError, 409, "Sincronização já finalizada"),
    (RefreshError, 401, "Autorização do Bling expirada. Autorize a integração novamente."),
    (AuthExchangeError, 401, "Erro na autenticação com o Bling."),
    (FetchError, 502, "Erro ao comunicar com o Bling"),
    (BlingError, 500, "Erro na integração com o Bling"),
]


async def bling_error_handler(request: Request, exc: BlingError) -> JSONResponse:
    for error_cls, status_code, message in _ERROR_RESPONSES:
        if isinstance(exc, error_cls):
            break
    if isinstance(exc, FetchError) and exc.code == "timeout":
        status_code = 504
    log = logger.error if status_code >= 500 else logger.info
    log("%s %s -> %d: %s", request.method, request.url.path, status_code, exc)
    return JSONResponse(status_code=status_code, content={"detail": message})


async def sync_log_not_found_handler(request: Request, exc: SyncLogNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": "Sincronização não encontrada"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BlingError, bling_error_handler)
    app.add_exception_handler(SyncLogNotFound, sync_log_not_found_handler)
