"""Article and link classification: the OpenAI collaborator and its work queue."""
