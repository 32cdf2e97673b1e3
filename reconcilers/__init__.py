"""Periodic settlement reconcilers."""
from .base import Reconciler, Outcome, utcnow
from .payments import PaymentReconciler
from .posts import PostReconciler
from .verification import VerificationReconciler, content_difference, levenshtein
from .settlement import EscrowSettlement, AutoReleaseReconciler, RefundReconciler
from .expiry import ExpiryReconciler

__all__ = [
    'Reconciler', 'Outcome', 'utcnow', 'PaymentReconciler', 'PostReconciler',
    'VerificationReconciler', 'content_difference', 'levenshtein',
    'EscrowSettlement', 'AutoReleaseReconciler', 'RefundReconciler', 'ExpiryReconciler',
]
