"""Pipeline components: admission, queueing, moderation, storage and workers."""
