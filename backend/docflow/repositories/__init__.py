from docflow.repositories.base import DocumentStore

__all__ = ["DocumentStore"]
