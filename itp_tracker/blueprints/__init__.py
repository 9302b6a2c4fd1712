"""
ITP Tracker
Blueprint registry.

    health_bp   — readiness / liveness probes
    project_bp  — projects, lots, conformance gate, test results, notifications
    itp_bp      — templates, assignment, checklist completion API
    ncr_bp      — non-conformance reports
"""
