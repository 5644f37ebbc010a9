"""
Remote job store server.

FastAPI application serving the HTTP contract consumed by
scene_pipeline.storage.remote_client.
"""
