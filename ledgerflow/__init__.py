"""
Ledgerflow — Event Ingestion & Agent Pipeline (v1.0.0)

Architecture:
  ledgerflow/
  ├── config/          — Constants, env settings, routing table, keyword tables
  ├── errors/          — Error taxonomy (validation, authorization, persistence, stage, upstream)
  ├── db/              — Document store (JSON file / PostgreSQL), query helpers
  ├── auth/            — JWT identity, service key + flag, company ownership
  ├── policy/          — Runtime thresholds + compliance rule evaluation (Policy stage)
  ├── counterparty/    — Text cleaning and token-containment similarity
  ├── stages/          — Stage names and the StageContext passed to every stage
  ├── events/          — Idempotency keys, exactly-once admission, event status
  ├── ingest/          — Idempotent ingestion gateway
  ├── pipeline/        — Orchestrator: routing, sequential stage calls, failure isolation
  ├── normalization/   — Heterogeneous payload → canonical record
  ├── matching/        — Fuzzy deduplication against recent master operations
  ├── classification/  — Business rules + keyword category scoring
  ├── anomalies/       — Z-score outliers and pattern heuristics
  ├── actions/         — Decision table → side effects (tasks, alerts, status)
  ├── workflow/        — Task / alert / command-log records, status transitions
  ├── briefing/        — Morning/evening executive briefing
  ├── growth/          — Growth insights and content suggestions
  ├── receipts/        — Receipt scanning through Claude vision
  ├── statements/      — Bank statement (CSV / OFX) parsing and import
  ├── payments/        — Stripe event → gateway adapter
  └── server.py        — FastAPI routing layer

Each module is self-contained with clear imports and no circular dependencies.
"""
