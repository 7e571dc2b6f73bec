"""
Embedded runtime supervisor for the self-hosted budgeting app.

- database: lifecycle of the embedded database inside the API process
- supervisor: API + web-client process supervision
- api: the FastAPI app served by the API process
"""

__version__ = "1.0.0"
