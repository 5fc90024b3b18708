"""
Models describing resolved container images.
"""
from pydantic import BaseModel


class ImageMetadata(BaseModel):
    """
    A concrete image as resolved against its registry.
    The tag may have been rewritten from "latest" to a version tag sharing the digest.
    """
    registry: str
    repository: str
    tag: str
    digest: str
    full_reference: str


class ImageInfo(BaseModel):
    """
    Identity of an image as a backend sees it. The digest may be empty when
    the backend does not record one.
    """
    ref: str
    digest: str = ""
