import threading

from supabase import create_client, Client, ClientOptions

from app.core.config import settings

# One client per worker thread; pooled HTTP/2 connections are not shared across threads
_thread_local = threading.local()


def get_supabase_client() -> Client:
    """Get the thread-local Supabase client used by the billing repositories.

    Billing writes go through the service-role key so row-level security does
    not hide other users' subscription rows from the webhook handler.
    """
    if not settings.supabase_url or not settings.supabase_secret_key:
        raise RuntimeError(
            "Supabase credentials not configured. "
            "Set SUPABASE_URL and SUPABASE_SECRET_KEY environment variables."
        )

    if not hasattr(_thread_local, "client"):
        _thread_local.client = create_client(
            settings.supabase_url,
            settings.supabase_secret_key,
            options=ClientOptions(
                postgrest_client_timeout=settings.db_timeout_seconds,
                auto_refresh_token=False,
                persist_session=False,
            ),
        )
    return _thread_local.client


def reset_supabase_client() -> None:
    """Drop the thread-local client so the next call opens a fresh connection."""
    if hasattr(_thread_local, "client"):
        delattr(_thread_local, "client")
