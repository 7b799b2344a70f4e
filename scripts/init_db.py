#!/usr/bin/env python3
"""Create the job_executions and job_runs tables."""

import asyncio
import sys
sys.path.insert(0, "backend")

from database import init_db


async def main():
    print("Initializing orchestrator database...")
    await init_db()
    print("Tables job_executions and job_runs are ready")


if __name__ == "__main__":
    asyncio.run(main())
