from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ROOT_ENV = os.path.abspath(os.path.join(BASE_DIR, "..", ".env"))

# Load shared repo-level env first, then allow scheduler_service/.env to override if needed
load_dotenv(dotenv_path=ROOT_ENV)
load_dotenv(dotenv_path=os.path.join(BASE_DIR, ".env"))

from assignment_agents.api import create_app
from assignment_agents.config import JWT_SECRET, get_config
from assignment_agents.worker import build_runtime

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# The service only triggers sweeps on request; the periodic loop lives in the worker.
scheduler, ticker = build_runtime(get_config(), worker_id=os.getenv("SCHEDULER_SERVICE_ID", "scheduler-api"))
app = create_app(scheduler, ticker, jwt_secret=JWT_SECRET)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("SCHEDULER_PORT", os.getenv("PORT", "8020")))
    host = os.getenv("SCHEDULER_HOST", "127.0.0.1")
    uvicorn.run("main:app", host=host, port=port)
