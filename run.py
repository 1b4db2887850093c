#!/usr/bin/env python3
"""
Development server runner for the CertChain service.
"""

import uvicorn
from dotenv import load_dotenv

# Load environment variables before settings are read
load_dotenv()

from certchain.core.config import get_settings  # noqa: E402

if __name__ == "__main__":
    settings = get_settings()

    print(f"Starting CertChain on {settings.host}:{settings.port}")
    print(f"Network: {settings.network_name} (chain id {settings.chain_id})")
    print(f"Log level: {settings.log_level}")
    print(f"API docs available at: http://{settings.host}:{settings.port}/docs")

    uvicorn.run(
        "certchain.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True
    )
