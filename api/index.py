import os
import sys

# Project root on sys.path so the package imports when deployed without install
root_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if root_dir not in sys.path:
    sys.path.append(root_dir)

from formbuilder_crm import create_app

app = create_app()
