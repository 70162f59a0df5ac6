"""
Basket Schemas Package
Provides the data structures shared by the basket analysis pipeline.
"""

from .basket_schemas import (
    # Published precision
    RATIO_DECIMALS,
    LIFT_DECIMALS,

    # Stage records
    TransactionRecord,
    OrderProductPair,
    ProductSupport,
    ProductPairAssociation,

    # Classification
    AssociationTier,

    # API payloads
    ProductPairDict,
    CleaningReportDict,
)

__all__ = [
    "RATIO_DECIMALS",
    "LIFT_DECIMALS",
    "TransactionRecord",
    "OrderProductPair",
    "ProductSupport",
    "ProductPairAssociation",
    "AssociationTier",
    "ProductPairDict",
    "CleaningReportDict",
]
