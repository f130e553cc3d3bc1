#!/usr/bin/env python3
"""
Billing service startup wrapper.
"""
import os
import sys

import uvicorn


def main():
    port = int(os.getenv("PORT", "8000"))
    print(f"[Billing] Server: http://localhost:{port}")
    try:
        uvicorn.run(
            "strategyplan.main:app",
            host="0.0.0.0",
            port=port,
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Billing] Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
