"""
                        Services Module

Provider integrations with the hybrid architecture pattern.
Each service has a Mock (development) and a Real (production) implementation.

Services:
    - payment: Stripe payment intents and Terminal tokens
    - delivery: Uber Direct quotes and deliveries
"""
