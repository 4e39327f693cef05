"""Task engine runtime: context management, provider access, checkpoints and control."""
