"""
Shared pytest setup: configure Django before any app module is imported.
"""
import os

import django

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')
django.setup()
