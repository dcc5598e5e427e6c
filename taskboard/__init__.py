# Task board: ordered status columns with optimistic moves and remote sync
#
# Components:
#   schema.py       - Data model (Task, TaskPriority) and error taxonomy
#   store.py        - In-memory task store, single source of truth for the UI
#   columns.py      - Ordered per-status views, filters, board stats
#   planner.py      - Pure move planning (dense position reassignment)
#   executor.py     - Optimistic apply, persistence tails, reconciliation
#   events.py       - Board event bus and settle notifications
#   workflow.py     - Optional allowed-transition policy
#   gateway.py      - SyncGateway port + in-memory gateway
#   sqlite_store.py - SQLite table with change log + gateway over it
#   http_gateway.py - Gateway speaking to board_server.py
#   config.py       - YAML configuration, logging setup, wiring
