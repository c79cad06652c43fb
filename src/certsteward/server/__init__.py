"""HTTP serving for the operator API (gunicorn runner and WSGI entry point)."""
