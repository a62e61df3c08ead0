# Security helpers: audit trail and signed session cookies.
