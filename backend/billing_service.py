"""
Architect Studio - Stripe Billing
Customers, Checkout sessions, the billing portal and the product catalogue.
"""

import logging
from typing import Optional

import stripe

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Stripe is unconfigured or rejected the request."""


def _plain(obj):
    return dict(obj) if obj else None


class BillingClient:
    def __init__(self, secret_key: Optional[str], publishable_key: Optional[str] = None):
        self.secret_key      = secret_key
        self.publishable_key = publishable_key

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _require_key(self) -> str:
        if not self.configured:
            raise BillingError("Stripe not configured")
        return self.secret_key

    def create_customer(self, email: Optional[str], user_id: str) -> str:
        key = self._require_key()
        try:
            customer = stripe.Customer.create(api_key=key, email=email or None, metadata={"userId": user_id})
        except stripe.StripeError as e:
            logger.error(f"[STRIPE] customer create failed for {user_id}: {e}")
            raise BillingError(str(e)) from e
        logger.info(f"[STRIPE] created customer for {user_id}")
        return customer.id

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        user_id: str,
        base_url: str,
        mode: str = "payment",
        count: int = 1,
    ) -> str:
        """Returns the hosted Checkout URL."""
        key = self._require_key()
        metadata = {"userId": user_id}
        if mode == "payment":
            metadata.update({"type": "pay_per_use", "count": str(count)})
        try:
            session = stripe.checkout.Session.create(
                api_key=key,
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": count if mode == "payment" else 1}],
                mode=mode,
                success_url=f"{base_url}/pricing?success=true",
                cancel_url=f"{base_url}/pricing?canceled=true",
                metadata=metadata,
            )
        except stripe.StripeError as e:
            logger.error(f"[STRIPE] checkout session failed for {user_id}: {e}")
            raise BillingError(str(e)) from e
        return session.url

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        key = self._require_key()
        try:
            session = stripe.billing_portal.Session.create(
                api_key=key, customer=customer_id, return_url=return_url
            )
        except stripe.StripeError as e:
            logger.error(f"[STRIPE] portal session failed: {e}")
            raise BillingError(str(e)) from e
        return session.url

    def list_products(self) -> list:
        """Active products, each with its active prices."""
        key = self._require_key()
        try:
            products = stripe.Product.list(api_key=key, active=True, limit=100)
            prices = stripe.Price.list(api_key=key, active=True, limit=100)
        except stripe.StripeError as e:
            logger.error(f"[STRIPE] product listing failed: {e}")
            raise BillingError(str(e)) from e

        catalogue = []
        for product in products.data:
            catalogue.append({
                "id": product.id,
                "name": product.name,
                "description": getattr(product, "description", None),
                "metadata": dict(getattr(product, "metadata", None) or {}),
                "prices": [
                    {
                        "id": price.id,
                        "unit_amount": getattr(price, "unit_amount", None),
                        "currency": getattr(price, "currency", None),
                        "recurring": _plain(getattr(price, "recurring", None)),
                    }
                    for price in prices.data
                    if getattr(price, "product", None) == product.id
                ],
            })
        return catalogue
