"""Stripe read access for billing reconciliation.

This service never initiates charges, checkout or portal sessions. It only
verifies webhooks and retrieves the objects needed to resolve a workspace
and a plan.
"""

import logging
from typing import Any

import stripe
from stripe import InvalidRequestError, SignatureVerificationError, StripeError

from reconciler.config import settings

logger = logging.getLogger(__name__)

# Initialize Stripe with secret key
stripe.api_key = settings.stripe_secret_key

# Expansion needed to resolve a plan from a subscription in a single call
SUBSCRIPTION_EXPAND = ["items.data.price.product"]


def _is_missing(error: InvalidRequestError) -> bool:
    return getattr(error, "code", None) == "resource_missing"


class StripeService:
    """
    Handles all Stripe API interactions.

    All methods are static and stateless. Stripe SDK handles connection pooling.
    "Not found" is reported as None; every other Stripe error propagates so the
    caller can treat it as transient.
    """

    @staticmethod
    def construct_webhook_event(payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and construct a webhook event from Stripe.

        Raises ValueError if signature verification fails.
        """
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload,
                signature,
                settings.stripe_webhook_secret,
            )
            return dict(event)
        except SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise ValueError("Invalid webhook signature") from None
        except ValueError as e:
            logger.warning(f"Invalid webhook payload: {e}")
            raise ValueError("Invalid webhook payload") from None

    @staticmethod
    def get_subscription(stripe_subscription_id: str) -> dict[str, Any] | None:
        """Retrieve a subscription with prices and products expanded. None if it doesn't exist."""
        try:
            sub = stripe.Subscription.retrieve(stripe_subscription_id, expand=SUBSCRIPTION_EXPAND)
            return dict(sub)
        except InvalidRequestError as e:
            if _is_missing(e):
                logger.info(f"Subscription {stripe_subscription_id} not found")
                return None
            logger.error(f"Failed to retrieve subscription {stripe_subscription_id}: {e}")
            raise
        except StripeError as e:
            logger.error(f"Failed to retrieve subscription {stripe_subscription_id}: {e}")
            raise

    @staticmethod
    def get_checkout_session(session_id: str) -> dict[str, Any] | None:
        """Retrieve a Checkout Session. None if it doesn't exist."""
        try:
            session = stripe.checkout.Session.retrieve(session_id)
            return dict(session)
        except InvalidRequestError as e:
            if _is_missing(e):
                logger.info(f"Checkout session {session_id} not found")
                return None
            logger.error(f"Failed to retrieve checkout session {session_id}: {e}")
            raise
        except StripeError as e:
            logger.error(f"Failed to retrieve checkout session {session_id}: {e}")
            raise

    @staticmethod
    def get_product(product_id: str) -> dict[str, Any] | None:
        """Retrieve a product (for its metadata). None if it doesn't exist."""
        try:
            product = stripe.Product.retrieve(product_id)
            return dict(product)
        except InvalidRequestError as e:
            if _is_missing(e):
                logger.info(f"Product {product_id} not found")
                return None
            logger.error(f"Failed to retrieve product {product_id}: {e}")
            raise
        except StripeError as e:
            logger.error(f"Failed to retrieve product {product_id}: {e}")
            raise


# Singleton instance
stripe_service = StripeService()
