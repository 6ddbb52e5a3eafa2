"""api/ -- HTTP layer: FastAPI app, routes, request/response models, error envelope."""
