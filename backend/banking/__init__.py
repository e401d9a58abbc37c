"""
Monzo Bank Integration

- monzo_client: thin httpx transport for the Monzo REST API
- retry: retry/backoff policy applied to every outbound bank call
- tokens: token expiry checks and refresh-on-401
- oauth: account linking (state store + callback orchestration)
- repository: persistence for accounts, sync runs and raw transactions
- sync_service: full-history import and incremental sync
- webhook_ingestor: push events from Monzo
- progress: in-process publish/subscribe for import progress
"""
