"""Authentication, authorization and credential resolution."""
