"""StemHub HTTP API."""
