#!/usr/bin/env python3
# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Promise registry server.

Configuration comes from the environment:
  REGISTRY_DB             SQLite path (default registry.db); the moderation
                          queue lives beside it in <name>_moderation.db
  REGISTRY_ADMIN_ADDRESS  admin wallet address (case-insensitive)
  REGISTRY_HOST / REGISTRY_PORT
  REGISTRY_LOG_LEVEL      default INFO
"""

import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import logging

import uvicorn
from protocol import ADMIN_ADDRESS
from registry.app import create_app
from registry.events import EventBus
from registry.moderation import ModerationQueue
from registry.store import LedgerStore

DB_PATH = os.environ.get("REGISTRY_DB", "registry.db")
HOST = os.environ.get("REGISTRY_HOST", "0.0.0.0")
PORT = int(os.environ.get("REGISTRY_PORT", "8000"))
LOG_LEVEL = os.environ.get("REGISTRY_LOG_LEVEL", "INFO").upper()


def moderation_db_path(db_path: str) -> str:
    root, ext = os.path.splitext(db_path)
    return f"{root}_moderation{ext or '.db'}"


def build_app():
    db_dir = os.path.dirname(DB_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    store = LedgerStore(DB_PATH)
    queue = ModerationQueue(moderation_db_path(DB_PATH))
    return create_app(store=store, moderation_queue=queue, bus=EventBus(), admin_address=ADMIN_ADDRESS)


def main():
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    log = logging.getLogger("registry.server")
    app = build_app()
    log.info("Ledger store at %s", DB_PATH)
    log.info("Admin address %s", ADMIN_ADDRESS)
    log.info("Listening on %s:%d", HOST, PORT)
    uvicorn.run(app, host=HOST, port=PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
