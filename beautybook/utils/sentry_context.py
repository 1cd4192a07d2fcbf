"""
Sentry error context utilities.

Helpers that attach structured billing context to exceptions before they are
sent to Sentry. Every helper is a no-op when the SDK has not been initialised
(sentry_sdk silently drops events without a client), so callers never need to
check whether Sentry is enabled.
"""

import logging
from typing import Any

import sentry_sdk

logger = logging.getLogger(__name__)


def capture_error(
    exception: Exception,
    context_type: str | None = None,
    context_data: dict[str, Any] | None = None,
    tags: dict[str, str] | None = None,
    level: str = "error",
) -> str | None:
    """
    Capture an exception to Sentry with structured context.

    Args:
        exception: The exception to capture
        context_type: Name of the context block (e.g. 'payment', 'supabase_config')
        context_data: Additional context information
        tags: Dictionary of tags for filtering
        level: Sentry level ('error', 'warning', ...)

    Returns:
        Event ID if captured, None if Sentry is disabled
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if context_type and context_data:
                scope.set_context(context_type, context_data)
            for key, value in (tags or {}).items():
                scope.set_tag(key, str(value))
            scope.level = level
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.warning(f"Failed to capture exception to Sentry: {e}")
        return None


def capture_payment_error(
    exception: Exception,
    operation: str,
    provider: str = "stripe",
    user_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> str | None:
    """
    Capture a billing-related error with standard context.

    Args:
        exception: The exception to capture
        operation: Billing operation (e.g. 'webhook', 'billing_portal', 'checkout')
        provider: Payment provider (default: 'stripe')
        user_id: Application user id if known
        details: Additional details (event id, subscription id, customer id, ...)

    Returns:
        Event ID if captured, None if Sentry is disabled
    """
    context_data: dict[str, Any] = {
        "operation": operation,
        "provider": provider,
    }
    if user_id:
        context_data["user_id"] = user_id
    if details:
        context_data.update(details)

    return capture_error(
        exception,
        context_type="payment",
        context_data=context_data,
        tags={"operation": operation, "provider": provider},
    )
