"""
Order fulfillment saga services.

  ┌────────┐  create   ┌──────────────┐  reserve/release  ┌───────────────────┐
  │ Client │──────────▶│ Saga Service │──────────────────▶│ Inventory Service │
  └────────┘           │              │──────────────────▶│ Order Service     │
                       └──────────────┘   persist order   └───────────────────┘
                                                                    ▲
  ┌─────────┐  webhook  ┌─────────────────┐  confirm / cancel       │
  │ Gateway │──────────▶│ Payment Service │─────────────────────────┘
  └─────────┘           └─────────────────┘
"""

__version__ = "0.1.0"
