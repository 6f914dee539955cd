"""gatepass command line interface."""
