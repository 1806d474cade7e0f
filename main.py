"""
willchain - API entry point

Loads .env, configures logging, wires the proof backend and (optionally)
the will factory client, starts the server.

Usage:
    python main.py              # Start the backend on BACKEND_PORT
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

from willchain.logging_utils import configure_logging

configure_logging()
logger = logging.getLogger("willchain.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from api.server import create_app
from willchain.chain import WillFactoryClient
from willchain.config import Settings, load_settings
from willchain.errors import RemoteCallError
from willchain.validation import is_ethereum_address
from willchain.zkp import SnarkjsProver


def _build_chain_client(settings: Settings):
    """Factory client for /predict-will; the server runs without it."""
    factory = os.getenv("WILL_FACTORY", "")
    if not is_ethereum_address(factory):
        logger.warning("WILL_FACTORY not set or invalid: /api/utils/predict-will disabled")
        return None
    return WillFactoryClient(
        factory,
        rpc_url=settings.network.rpc_url,
        expected_chain_id=settings.network.chain_id,
        factory_abi=os.getenv("WILL_FACTORY_ABI") or None,
    )


def create_willchain_app(settings: Optional[Settings] = None):
    settings = settings or load_settings()
    prover = SnarkjsProver(settings.zkp_dir, snarkjs_bin=settings.snarkjs_bin)
    chain_client = _build_chain_client(settings)

    app = create_app(
        prover=prover,
        chain_client=chain_client,
        chain_id=settings.network.chain_id,
        permit2_address=settings.permit2_address,
        algorithm=settings.crypto_algorithm,
        cors_origins=settings.cors_origins,
    )

    @asynccontextmanager
    async def lifespan(app):
        """Startup and shutdown."""
        logger.info("=" * 60)
        logger.info(f"willchain backend | network={settings.network.name} (chain {settings.network.chain_id})")
        logger.info(f"ZKP dir: {settings.zkp_dir} | cipher: {settings.crypto_algorithm.value}")
        logger.info("=" * 60)
        if chain_client is not None:
            try:
                chain_client.connect()
            except RemoteCallError as e:
                # connect() is retried lazily on the first call
                logger.warning(f"Chain client not connected at startup: {e.message}")
        yield
        logger.info("willchain backend shutting down")

    # Replace the default lifespan with ours
    app.router.lifespan_context = lifespan
    return app


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    settings = load_settings()
    host = os.getenv("HOST", "0.0.0.0")

    logger.info(f"Starting server on {host}:{settings.backend_port}")
    logger.info(f"ZKP endpoints: http://localhost:{settings.backend_port}/api/zkp/*")

    uvicorn.run(
        create_willchain_app(settings),
        host=host,
        port=settings.backend_port,
        log_level=settings.log_level.lower(),
    )
