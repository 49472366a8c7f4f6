"""
                        Hubplate Payments

Order payment & fulfillment reconciliation for the Hubplate restaurant
point-of-sale platform. Keeps one canonical order record consistent while
card-processor webhooks, courier webhooks and in-app captures race to
update it.

License: MIT
"""

__version__ = "1.0.0"
