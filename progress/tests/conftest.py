import os

import django

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "project.settings")
django.setup()

from progress.tests.fixtures import *  # noqa: F401,F403
