from __future__ import annotations
import os

# Shell used for the single fallback attempt of a failed external step
SHELL = os.environ.get("STEPFLOW_SHELL", "/bin/sh")

# Backends driven by the built-in operations
REF_PROGRAM = os.environ.get("STEPFLOW_REF_PROGRAM", "roers")
INDEX_PROGRAM = os.environ.get("STEPFLOW_INDEX_PROGRAM", "salmon")
PISCEM_PROGRAM = os.environ.get("STEPFLOW_PISCEM_PROGRAM", "piscem")
QUANT_PROGRAM = os.environ.get("STEPFLOW_QUANT_PROGRAM", "alevin-fry")

# Characters of captured stdout/stderr kept when a step fails
OUTPUT_TAIL = int(os.environ.get("STEPFLOW_OUTPUT_TAIL", "4000"))
