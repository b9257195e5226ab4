"""
EdPsych entitlements API entry point.

Run locally with:
    python backend/main.py
"""

import os

from edpsych.app import create_app

app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
