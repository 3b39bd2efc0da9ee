#!/usr/bin/env python3
"""
User Banking Service Entry Point

Starts the FastAPI server with the host and port from configuration.
"""

import sys

import uvicorn

from user_banking.config import get_config


def run_server(host: str, port: int, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "user_banking.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


if __name__ == "__main__":
    config = get_config()
    print("Starting User Banking Service...")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\nShutting down User Banking Service...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
