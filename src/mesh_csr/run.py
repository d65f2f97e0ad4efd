#!/usr/bin/env python
import os
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from loguru import logger

if __name__ == "__main__":
    load_dotenv(Path.cwd() / ".env")
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logger.remove()
    logger.add(sys.stderr, level=log_level)
    logger.info("cert-manager Istio CSR service, start running!")

    from src.mesh_csr.config import config

    uvicorn.run(
        "src.mesh_csr.main:app",
        host=config.serving_host,
        port=config.serving_port,
        log_level=log_level.lower(),
    )
