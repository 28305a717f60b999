"""
API Gateway Service package for the Access Engine.

The gateway makes the access decision for every protected request:

- app.main: FastAPI app with the access-decision endpoint.
- app.gate: credential extraction and the ordered decision pipeline.
- app.ratelimit: fixed-window hourly limiter for API-key callers.
"""
