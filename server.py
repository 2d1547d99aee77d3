"""Campaign mesh server entry point."""

import os

import uvicorn
from dotenv import load_dotenv

load_dotenv()

if __name__ == "__main__":
    # 127.0.0.1 for local development; bind 0.0.0.0 only when other hosts need access
    host = os.getenv("CAMPAIGN_MESH_HOST", "127.0.0.1")
    port = int(os.getenv("CAMPAIGN_MESH_PORT", 8000))
    reload = os.getenv("CAMPAIGN_MESH_RELOAD", "false").lower() == "true"

    print(f"Starting campaign mesh API on {host}:{port}")
    uvicorn.run("campaign_mesh.main:app", host=host, port=port, reload=reload)
