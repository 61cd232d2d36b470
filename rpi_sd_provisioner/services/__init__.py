"""Network-facing and operator-facing collaborators of the pipeline."""
