import os

# Use litellm's bundled model cost map instead of a background network fetch
# at import time, which can deadlock test collection when offline.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")
