"""StemHub workflow services.

Each module owns one component of the revision/review workflow and takes an
``AsyncSession`` as its first argument.  Routes delegate here; no business
logic lives in routes.
"""
