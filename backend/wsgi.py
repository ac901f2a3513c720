# backend/wsgi.py
from pharmaconnect import create_app

app = create_app()
