"""Image generation job lifecycle: creation, processing, status and waiting."""
