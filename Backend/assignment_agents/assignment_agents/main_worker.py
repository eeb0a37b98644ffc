# assignment_agents/main_worker.py
# Entrypoint: python -m assignment_agents.main_worker
from __future__ import annotations

from assignment_agents.worker import main


if __name__ == "__main__":
    main()
