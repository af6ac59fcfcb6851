"""FastAPI back-end that stages metfish refinement jobs and publishes their outputs."""
