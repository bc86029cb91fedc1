"""Configuration settings for the lab integration engine."""

import os


def get_postgres_uri():
    """Get PostgreSQL connection URI from environment variables."""
    host = os.environ.get("DB_HOST", "localhost")
    port = 5433 if host == "localhost" else 5432
    password = os.environ.get("DB_PASSWORD", "labflow_pass")
    user = os.environ.get("DB_USER", "labflow_user")
    db_name = os.environ.get("DB_NAME", "labflow_db")
    return f"postgresql://{user}:{password}@{host}:{port}/{db_name}"


def get_redis_host_and_port():
    """Get Redis connection details from environment variables."""
    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", 6379))
    return dict(host=host, port=port)


def get_result_events_channel():
    """Redis channel on which result status changes are published."""
    return os.environ.get("RESULT_EVENTS_CHANNEL", "labflow:result-status")


def get_api_url():
    """Get API URL from environment variables."""
    host = os.environ.get("API_HOST", "localhost")
    port = int(os.environ.get("API_PORT", 8000))
    return f"http://{host}:{port}"


def get_delivery_timeout():
    """Deadline in seconds for a single outbound HTTP call."""
    return float(os.environ.get("DELIVERY_TIMEOUT_SECONDS", "10"))


def get_delivery_concurrency():
    """Number of integrations a completed result is sent to in parallel."""
    return int(os.environ.get("DELIVERY_CONCURRENCY", "8"))


def get_sync_concurrency():
    """Number of patients pushed in parallel during a bulk sync."""
    return int(os.environ.get("SYNC_CONCURRENCY", "8"))


def get_delivery_max_attempts():
    """
    Attempts per outbound delivery. 1 means fire-and-forget: a failed
    send is logged and never retried.
    """
    return max(1, int(os.environ.get("DELIVERY_MAX_ATTEMPTS", "1")))


def get_sending_application():
    return os.environ.get("SENDING_APPLICATION", "LABFLOW")


def get_sending_facility():
    return os.environ.get("SENDING_FACILITY", "")


def get_jwt_settings():
    """
    Get settings used to verify caller tokens on admin endpoints.
    JWT_SECRET_KEY is required; there is no default secret.
    """
    secret_key = os.environ.get("JWT_SECRET_KEY")
    if not secret_key:
        raise RuntimeError("JWT_SECRET_KEY is not set")
    return dict(
        secret_key=secret_key,
        algorithm=os.environ.get("JWT_ALGORITHM", "HS256"),
    )
