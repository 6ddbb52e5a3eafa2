"""api/routes/ -- APIRouter modules mounted by api/main.py."""
