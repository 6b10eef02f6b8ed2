"""Standalone FastAPI server entry point.

Run with: python run.py
"""
import logging
import os

import uvicorn

# Configure logging to show run lifecycle info
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

if __name__ == "__main__":
    uvicorn.run(
        "muse_runner.fastapi_app:app",
        host=os.getenv("MUSE_RUNNER_HOST", "127.0.0.1"),
        port=int(os.getenv("MUSE_RUNNER_PORT", "7861")),
        reload=False,
    )
