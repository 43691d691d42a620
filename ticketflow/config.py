"""Configuration for the intake queue, worker pool, enrichment services and routing."""

import os

REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

# --- Work queue / worker pool ---
QUEUE_KEY: str = os.environ.get("QUEUE_KEY", "queue:ticket-analysis")
WORKER_CONCURRENCY: int = int(os.environ.get("WORKER_CONCURRENCY", "4"))
# BRPOP timeout; loops re-check the running flag after each wait.
DEQUEUE_TIMEOUT_SECONDS: int = int(os.environ.get("DEQUEUE_TIMEOUT_SECONDS", "5"))
RECONNECT_DELAY_SECONDS: float = float(os.environ.get("RECONNECT_DELAY_SECONDS", "1.0"))

# --- Classification (OpenAI-compatible chat completions) ---
LLM_BASE_URL: str = os.environ.get("OPENAI_BASE_URL", "http://localhost:11434/v1")
LLM_API_KEY: str = os.environ.get("OPENAI_API_KEY", "ollama")
LLM_MODEL: str = os.environ.get("OPENAI_MODEL", "mistral")
LLM_TIMEOUT_SECONDS: float = float(os.environ.get("LLM_TIMEOUT_SECONDS", "30"))
LLM_TEMPERATURE: float = float(os.environ.get("LLM_TEMPERATURE", "0.1"))

# --- Geolocation ---
GEOCODER_URL: str = os.environ.get("GEOCODER_URL", "https://nominatim.openstreetmap.org/search")
GEOCODER_USER_AGENT: str = os.environ.get("GEOCODER_USER_AGENT", "ticketflow/0.1 (support-routing)")
GEOCODER_TIMEOUT_SECONDS: float = float(os.environ.get("GEOCODER_TIMEOUT_SECONDS", "4"))
DEFAULT_COUNTRY: str = os.environ.get("DEFAULT_COUNTRY", "Казахстан")

# --- Routing ---
# "scoring" (multi-factor) or "round_robin" (two least-loaded agents of the office, alternating)
ROUTING_STRATEGY: str = os.environ.get("ROUTING_STRATEGY", "scoring")
DEFAULT_OFFICE: str = os.environ.get("DEFAULT_OFFICE", "AST-1")
AUTOMATION_AGENT_NAME: str = os.environ.get("AUTOMATION_AGENT_NAME", "Voice Agent Robot")
NEW_STATUS: str = os.environ.get("NEW_STATUS", "Новый")
# Set by an upstream channel that already closed the loop (e.g. the voice bot).
RESOLVED_STATUS: str = os.environ.get("RESOLVED_STATUS", "Завершен")

# --- Stats cache ---
STATS_CACHE_PATTERN: str = os.environ.get("STATS_CACHE_PATTERN", "cache:stats:*")
STATS_CACHE_TTL: int = int(os.environ.get("STATS_CACHE_TTL", "60"))
