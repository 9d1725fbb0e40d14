"""Server launcher.

Equivalent to: `uvicorn knowledge_relay.app:app --host 0.0.0.0 --port <server.port>`
"""

import uvicorn

from knowledge_relay.app import get_config

if __name__ == "__main__":
    cfg = get_config()
    uvicorn.run(
        "knowledge_relay.app:app",
        host="0.0.0.0",
        port=cfg.server.port,
        reload=cfg.server.mode == "debug",
    )
