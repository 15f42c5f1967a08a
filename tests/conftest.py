import os
import sys

# Modules import their siblings as top-level modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "proxymesh_proj"))
