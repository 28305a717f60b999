"""
Auth Service package for the Access Engine.

Issues and rotates session credentials and API keys:

- app.main: FastAPI application with signup, login, refresh, logout and
  API-key routes.
- app.tokens: access-token minting and validation, refresh-token rotation.
- app.accounts: signup and password login (passlib).
- app.api_keys: API-key issuance, revocation and lookup.

Module import must not perform IO; the store is reached only from handlers.
"""
