"""
WhatsApp Automation Dashboard
=============================

Multi-user WhatsApp automation backend using the WAHA bridge.
Each dashboard user links one WhatsApp account.

Architecture:
- FastAPI server: dashboard HTTP API, WebSocket channel, WAHA webhooks
- Per-contact kanban tickets with bounded message history
- Auto-replies: pause keyword, canned responses, OpenAI
- Daily metrics and activity log pushed to the dashboard
"""

import os

# Import WhatsApp Gateway
from apps.whatsapp_gateway.main import app

if __name__ == "__main__":
    import uvicorn

    # Get port from environment
    port = int(os.getenv("PORT", "8000"))

    # Start server
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info",
        access_log=True
    )
