"""PlanGraph API server entry point."""

import os

import uvicorn

if __name__ == "__main__":
    host = os.getenv("API_HOST", "127.0.0.1")
    port = int(os.getenv("API_PORT", 8000))
    debug = os.getenv("DEBUG", "false").lower() == "true"

    print(f"Starting PlanGraph API server on {host}:{port}")
    uvicorn.run("plangraph.main:app", host=host, port=port, reload=debug)
