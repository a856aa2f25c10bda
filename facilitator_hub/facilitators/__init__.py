"""
Facilitator records and funding reconciliation
"""

from facilitator_hub.facilitators.directory import FacilitatorDirectory, PaymentProofVerifier
from facilitator_hub.facilitators.monitor import BalanceReport, FundingMonitor, FundingReport
from facilitator_hub.facilitators.registration import RegistrationPaymentVerifier

__all__ = [
    "FacilitatorDirectory",
    "PaymentProofVerifier",
    "FundingMonitor",
    "BalanceReport",
    "FundingReport",
    "RegistrationPaymentVerifier",
]
