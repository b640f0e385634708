"""Storage quota reservation ledger.

``service`` holds the reserve/commit/cancel/expire protocol and quota
snapshots, ``reconciliation`` audits committed usage against stored files.
Both are imported explicitly by callers; this package stays import-light so
that loading the ORM models never pulls in the services.
"""
