"""Entity records and database tables."""
