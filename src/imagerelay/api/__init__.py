"""Image Relay — FastAPI REST API layer.

Modules
-------
main
    FastAPI application factory, route handlers, background sweeps and the
    ``main()`` CLI entry point.
models
    Pydantic request and response models for the API.
"""
