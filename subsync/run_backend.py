#!/usr/bin/env python
"""
Development server runner.

    python -m subsync.run_backend
"""
import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "subsync.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("ENV", "development") == "development",
    )


if __name__ == "__main__":
    main()
