"""Repository URL resolution and devfile (factory) resolution."""

from scmsrv.scm.factory import AuthorizationRequired, FactoryError, FactoryResolver
from scmsrv.scm.urls import (
    DEFAULT_DEVFILE_FILENAMES,
    AzureDevOpsUrl,
    BitbucketServerUrl,
    BitbucketUrl,
    DevfileLocation,
    GithubUrl,
    GitlabUrl,
    RemoteUrl,
    parse_url,
)

__all__ = [
    "DEFAULT_DEVFILE_FILENAMES",
    "AuthorizationRequired",
    "AzureDevOpsUrl",
    "BitbucketServerUrl",
    "BitbucketUrl",
    "DevfileLocation",
    "FactoryError",
    "FactoryResolver",
    "GithubUrl",
    "GitlabUrl",
    "RemoteUrl",
    "parse_url",
]
