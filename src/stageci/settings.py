from __future__ import annotations
import os

PIPELINE_FILE = os.environ.get("STAGECI_PIPELINE_FILE", ".stageci.yml")
CACHE_DIR = os.environ.get("STAGECI_CACHE_DIR", ".stageci/cache")
ARTIFACT_DIR = os.environ.get("STAGECI_ARTIFACT_DIR", ".stageci/artifacts")
WORKERS = int(os.environ["STAGECI_WORKERS"]) if os.environ.get("STAGECI_WORKERS") else None
EXECUTOR = os.environ.get("STAGECI_EXECUTOR", "shell")
