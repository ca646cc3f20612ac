"""
Interactive setup wizard for a company's Bling connection.

Prompts for the Bling app's client id and secret, stores them for the
company, and prints the consent URL. Opening that URL while logged in
completes the authorization through the API's /auth/bling/callback.

Usage:
    python -m blingsync configure
    python -m blingsync.scripts.setup   (direct invocation)

Re-run any time the app credentials change; stored tokens are discarded
when they do.
"""
import asyncio
import getpass
import sys

from blingsync.bling.client import BlingClient
from blingsync.bling.tokens import TokenState
from blingsync.db.engine import get_engine
from blingsync.db.stores import SqlCredentialStore


def run_setup() -> None:
    store = SqlCredentialStore(get_engine())

    print("\nBling Sync: connection setup\n")

    company_id = input("Company id: ").strip()
    if not company_id:
        print("Error: company id cannot be empty.")
        sys.exit(1)

    existing = store.load(company_id)
    if existing is not None:
        print("An existing connection was found for this company.")
        overwrite = input("Replace its credentials? [y/N] ").strip().lower()
        if overwrite != "y":
            print("Setup cancelled. Existing connection unchanged.")
            sys.exit(0)

    client_id = input("Bling client id: ").strip()
    if not client_id:
        print("Error: client id cannot be empty.")
        sys.exit(1)

    client_secret = getpass.getpass("Bling client secret: ")
    if not client_secret:
        print("Error: client secret cannot be empty.")
        sys.exit(1)

    state = TokenState(company_id=company_id, client_id=client_id, client_secret=client_secret)
    if (
        existing is not None
        and existing.client_id == client_id
        and existing.client_secret == client_secret
    ):
        state = existing  # same app: keep the tokens we already have
    store.save(state)

    url = asyncio.run(_authorization_url(state))
    print(f"\nCredentials saved for company {company_id}.")
    print("Open this URL while logged in to authorize the integration:\n")
    print(f"  {url}\n")


async def _authorization_url(state: TokenState) -> str:
    async with BlingClient(state) as client:
        return client.authorization_url(state=state.company_id)


if __name__ == "__main__":
    run_setup()
