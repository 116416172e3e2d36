"""Design model, configuration, error taxonomy and design diagnostics."""
