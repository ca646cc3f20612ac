"""
Server side of the Bling authorization-code flow.

The browser lands on the callback with ?code=...&state=<company_id>. The
handler checks the user may manage that company, exchanges the code using
the company's stored client credentials, and writes the new tokens in one
save. Nothing is written unless the exchange succeeded.

Every outcome becomes an OAuthResult with a short Portuguese message for
the popup; the underlying error is only logged.
"""
import html
import json
import logging
from typing import Optional

from pydantic import BaseModel

from blingsync.bling.errors import AccessDeniedError, AuthExchangeError, ConfigurationError

logger = logging.getLogger(__name__)

MSG_MISSING_PARAMS = "Código de autorização ou empresa ausentes no callback."
MSG_INVALID_SESSION = "Sessão inválida. Faça login novamente e repita a autorização."
MSG_ACCESS_DENIED = "Acesso negado à empresa."
MSG_NO_CREDENTIALS = "Credenciais do Bling não encontradas. Salve a configuração antes de autorizar."
MSG_EXCHANGE_FAILED = "Erro na autenticação com o Bling."
MSG_SAVE_FAILED = "Erro ao salvar tokens no banco."
MSG_SUCCESS = "Autorização concluída com sucesso!"
MSG_UNEXPECTED = "Erro inesperado no callback do Bling."


class OAuthResult(BaseModel):
    success: bool
    company_id: Optional[str] = None
    message: str


class _TokenSaveError(Exception):
    pass


class OAuthCallbackHandler:
    def __init__(self, credentials, access, activities, client_factory):
        """
        Args:
            credentials: CredentialStore holding the company's client id/secret.
            access: AccessChecker deciding whether the user may manage the company.
            activities: ActivitySink for the audit record.
            client_factory: (TokenState, store) -> BlingClient.
        """
        self.credentials = credentials
        self.access = access
        self.activities = activities
        self.client_factory = client_factory

    async def handle(
        self, code: Optional[str], company_id: Optional[str], user_id: Optional[str]
    ) -> OAuthResult:
        if not code or not company_id:
            return OAuthResult(success=False, company_id=company_id, message=MSG_MISSING_PARAMS)
        if not user_id:
            return OAuthResult(success=False, company_id=company_id, message=MSG_INVALID_SESSION)

        try:
            await self._complete(code, company_id, user_id)
        except AccessDeniedError:
            logger.warning("User %s has no access to company %s", user_id, company_id)
            return OAuthResult(success=False, company_id=company_id, message=MSG_ACCESS_DENIED)
        except ConfigurationError as exc:
            logger.warning("Bling callback for company %s: %s", company_id, exc)
            return OAuthResult(success=False, company_id=company_id, message=MSG_NO_CREDENTIALS)
        except AuthExchangeError as exc:
            logger.warning("Bling code exchange failed for company %s: %s", company_id, exc)
            return OAuthResult(success=False, company_id=company_id, message=MSG_EXCHANGE_FAILED)
        except _TokenSaveError:
            logger.exception("Could not store Bling tokens for company %s", company_id)
            return OAuthResult(success=False, company_id=company_id, message=MSG_SAVE_FAILED)
        except Exception:
            logger.exception("Unexpected error in Bling callback for company %s", company_id)
            return OAuthResult(success=False, company_id=company_id, message=MSG_UNEXPECTED)

        return OAuthResult(success=True, company_id=company_id, message=MSG_SUCCESS)

    async def _complete(self, code: str, company_id: str, user_id: str) -> None:
        if not await self.access.has_access(user_id, company_id):
            raise AccessDeniedError(f"user {user_id} cannot manage company {company_id}")

        stored = self.credentials.load(company_id)
        if stored is None or not stored.client_id or not stored.client_secret:
            raise ConfigurationError("client credentials not configured")

        # The exchange runs on a store-less client; tokens are saved below in one write
        client = self.client_factory(stored, None)
        try:
            new_state = await client.authenticate(code)
        finally:
            await client.aclose()

        # Only tokens change; a deactivated connection stays deactivated
        try:
            self.credentials.save(new_state)
        except Exception as exc:
            raise _TokenSaveError(str(exc)) from exc
        logger.info("Stored new Bling tokens for company %s", company_id)

        try:
            self.activities.record(
                "integration_configured",
                "Bling autorizado",
                company_id=company_id,
                user_id=user_id,
                description=f"Integração Bling autorizada para a empresa {company_id}",
            )
        except Exception:
            # Tokens are already stored; the authorization stands
            logger.exception("Could not record Bling authorization for company %s", company_id)


def render_callback_page(result: OAuthResult) -> str:
    """Minimal page that reports the result to the opener window and closes."""
    payload = json.dumps(
        {
            "type": "bling_auth",
            "success": result.success,
            "companyId": result.company_id or "",
            "message": result.message,
        }
    ).replace("<", "\\u003c")
    title = "Autorização concluída" if result.success else "Falha na autorização"
    return f"""<!DOCTYPE html>
<html lang="pt-BR">
<head><meta charset="utf-8" /><title>Bling OAuth</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  <p>{html.escape(result.message)}</p>
  <p>Você pode fechar esta janela.</p>
  <script>
    try {{
      if (window.opener) {{ window.opener.postMessage({payload}, '*'); }}
      setTimeout(function () {{ window.close(); }}, 1200);
    }} catch (e) {{}}
  </script>
</body>
</html>"""
