#!/usr/bin/env python3
"""
Backend startup wrapper.

HOST, PORT and RELOAD come from the environment; everything else is read by
the app itself from settings.
"""
import os
import sys


def main() -> None:
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))

    print("[Backend] Starting Resume Rewriter backend")
    print(f"[Backend] Server: http://{host}:{port}")
    try:
        uvicorn.run(
            "resume_rewriter.main:app",
            host=host,
            port=port,
            reload=os.getenv("RELOAD") == "1",
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Backend] Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
