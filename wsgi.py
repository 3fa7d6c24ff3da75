# wsgi.py
"""
WSGI entry point for production servers (``wsgi:application``)
"""

from app import create_app

application = create_app()
