"""
TOLLGATE - Serverless API

Wraps the FastAPI application for AWS Lambda / Vercel style runtimes.
The periodic sweep loop is normally disabled here (SWEEP_INTERVAL_SECONDS=0)
and replaced by a platform cron calling POST /admin/process-one with the
X-Admin-Task secret.
"""

from mangum import Mangum

from tollgate.api.server import app

# Vercel handler
handler = Mangum(app, lifespan="auto")
