"""Pipeline orchestration: stage registry, transition engine, impact and progress."""
