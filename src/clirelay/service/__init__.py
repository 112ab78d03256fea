"""HTTP service: executor, validation, guards and the FastAPI app."""
