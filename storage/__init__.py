"""On-disk state: issued certificates and ACME accounts."""
