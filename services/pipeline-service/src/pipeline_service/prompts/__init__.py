"""Prompt templates for the pipeline stages.

Each stage has a ``<stage>_system.j2`` and ``<stage>_user.j2`` pair in this
directory, rendered with ``paperflow_inference.factory.render_prompts``.
"""

from pathlib import Path

# Directory containing prompt templates (this package directory)
PROMPTS_DIR = Path(__file__).parent
