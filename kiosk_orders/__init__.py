# Multi-vendor order lifecycle: status tracks, fulfillment roll-up, disputes,
# cancellation compensation and payment webhook reconciliation.

__version__ = "1.0.0"
