#!/usr/bin/env python3
"""
ClusterDeck backend server.
"""

import uvicorn
from dotenv import load_dotenv

# .env values must be visible before Settings is built
load_dotenv()

from clusterdeck.config import get_settings
from clusterdeck.main import create_app

settings = get_settings()
app = create_app(settings)

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        log_config=None,
    )
