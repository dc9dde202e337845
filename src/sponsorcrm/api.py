from __future__ import annotations

import hmac
import json
import logging

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from sponsorcrm.config import CRON_SECRET_ENV, ESIGN_WEBHOOK_CLIENT_ID_ENV, env_secret
from sponsorcrm.context import AppContext
from sponsorcrm.domain.rules import ValidationError
from sponsorcrm.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    ProviderError,
    TransactionError,
)

logger = logging.getLogger(__name__)

CLIENT_ID_HEADER = "X-AdobeSign-ClientId"


class StatusUpdateBody(BaseModel):
    axis: str
    value: str
    author: str | None = None


class SigningCompletionBody(BaseModel):
    signer_name: str
    signed_at: str | None = None


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    secret = env_secret(CRON_SECRET_ENV)
    if not secret:
        raise ConfigurationError(f"{CRON_SECRET_ENV} is not configured.")
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise AuthenticationError("Unauthorized")


def _webhook_client_id(request: Request) -> str:
    received = request.headers.get(CLIENT_ID_HEADER)
    expected = env_secret(ESIGN_WEBHOOK_CLIENT_ID_ENV)
    if not received or not expected or not hmac.compare_digest(received, expected):
        logger.error("Signing webhook rejected: client id missing or mismatched")
        raise AuthenticationError("Invalid client ID")
    return received


def create_app(ctx: AppContext) -> FastAPI:
    app = FastAPI(title="sponsorcrm")

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=exc.to_dict())

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError):
        return _error(status.HTTP_401_UNAUTHORIZED, str(exc))

    @app.exception_handler(NotFoundError)
    async def not_found_error_handler(request: Request, exc: NotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError):
        # Missing or closed agreements keep their own status code.
        if exc.status_code in (status.HTTP_404_NOT_FOUND, status.HTTP_409_CONFLICT):
            return _error(exc.status_code, str(exc))
        return _error(status.HTTP_502_BAD_GATEWAY, str(exc), provider_status=exc.status_code)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        logger.error("Configuration error: %s", exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    @app.exception_handler(TransactionError)
    async def transaction_error_handler(request: Request, exc: TransactionError):
        logger.error("Transaction failed: %s", exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Transaction failed; nothing was changed.")

    @app.get("/api/cron/contract-reminders", dependencies=[Depends(_require_cron_secret)])
    def contract_reminders():
        return ctx.reminders.sweep().to_dict()

    @app.patch("/api/sponsor-for-conference/{sfc_id}/status")
    def update_status(sfc_id: str, body: StatusUpdateBody):
        result = ctx.mutations.update_status(sfc_id, body.axis, body.value, body.author or "system")
        return {
            "sfc_id": sfc_id,
            "axis": result.axis.value,
            "old_value": result.old_value,
            "new_value": result.new_value,
            "changed": result.changed,
        }

    @app.delete("/api/sponsor-for-conference/{sfc_id}")
    def delete_sponsor_for_conference(
        sfc_id: str, delete_contract_asset: bool = Query(default=False, alias="deleteContractAsset")
    ):
        plan = ctx.deleter.delete_sponsor_for_conference(sfc_id, delete_contract_asset)
        return {"success": True, "deleted": plan.summary(), "retained_assets": list(plan.retained_asset_ids)}

    @app.delete("/api/sponsors/{sponsor_id}")
    def delete_sponsor(sponsor_id: str):
        plan = ctx.deleter.delete_sponsor(sponsor_id)
        return {"success": True, "deleted": plan.summary(), "retained_assets": list(plan.retained_asset_ids)}

    @app.get("/api/signing/{token}")
    def signing_portal(token: str):
        return ctx.contracts.describe_agreement(token)

    @app.post("/api/signing/{token}/complete")
    def complete_signing(token: str, body: SigningCompletionBody):
        result = ctx.contracts.complete_self_hosted_signing(token, body.signer_name, body.signed_at)
        return {"success": True, "sfc_id": result.sfc_id, "signature_status": result.signature_status}

    @app.get("/api/webhooks/signing")
    def verify_signing_webhook(request: Request):
        client_id = _webhook_client_id(request)
        return JSONResponse({"xAdobeSignClientId": client_id}, headers={CLIENT_ID_HEADER: client_id})

    @app.post("/api/webhooks/signing")
    async def signing_webhook(request: Request):
        client_id = _webhook_client_id(request)
        headers = {CLIENT_ID_HEADER: client_id}
        try:
            event = json.loads(await request.body())
        except ValueError:
            return JSONResponse({"error": "Invalid JSON"}, status_code=400, headers=headers)
        if not isinstance(event, dict):
            return JSONResponse({"error": "Invalid event"}, status_code=400, headers=headers)
        new_status = ctx.contracts.handle_provider_event(event)
        return JSONResponse(
            {"xAdobeSignClientId": client_id, "signature_status": new_status}, headers=headers
        )

    return app
