"""Muse Comfy Runner - submits templated ComfyUI workflows and tracks their runs."""
