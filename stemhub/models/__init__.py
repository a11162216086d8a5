"""Pydantic request/response models for the StemHub HTTP API."""
