"""Tests for scmsrv.scm.urls – repository URL classification and raw locations."""

from __future__ import annotations

import pytest

from scmsrv.scm.urls import (
    AzureDevOpsUrl,
    BitbucketServerUrl,
    BitbucketUrl,
    DevfileLocation,
    GithubUrl,
    GitlabUrl,
    normalize_scm_url,
    parse_url,
)

# =====================================================================
# Priority order
# =====================================================================


class TestParseUrlPriority:
    def test_github_enterprise_with_branch(self):
        remote = parse_url("https://github.example.com/acme/repo/tree/dev/devfile.yaml")
        assert isinstance(remote, GithubUrl)
        assert remote.provider_url == "https://github.example.com"
        assert remote.owner == "acme"
        assert remote.repository == "repo"
        assert remote.branch == "dev"

    def test_ssh_form_equals_https_form(self):
        assert parse_url("git@github.com:acme/repo.git") == parse_url("https://github.com/acme/repo")

    def test_github_wins_over_gitlab(self):
        remote = parse_url("https://github.gitlab.example.com/acme/repo")
        assert isinstance(remote, GithubUrl)

    def test_bitbucket_server_before_cloud(self):
        remote = parse_url("https://bitbucket.example.com/scm/acme/app.git")
        assert isinstance(remote, BitbucketServerUrl)

    def test_bitbucket_org_is_cloud(self):
        assert isinstance(parse_url("https://bitbucket.org/ws/app"), BitbucketUrl)

    def test_azure_last(self):
        assert isinstance(parse_url("https://dev.azure.com/org/proj/_git/repo"), AzureDevOpsUrl)

    @pytest.mark.parametrize(
        "url",
        [
            "",
            "not a url",
            "ftp://github.com/acme/repo",
            "https://github.com/onlyowner",
            "https://gitlab.com/onlyone",
            "http://[::1",
            "https://example.com/some/where",
        ],
    )
    def test_unmatched_returns_none(self, url: str):
        assert parse_url(url) is None


# =====================================================================
# GitHub
# =====================================================================


class TestGithubUrl:
    def test_raw_location_github_com(self):
        remote = parse_url("https://github.com/acme/repo")
        assert remote is not None
        assert remote.raw_file_location("devfile.yaml") == (
            "https://raw.githubusercontent.com/acme/repo/HEAD/devfile.yaml"
        )

    def test_raw_location_enterprise(self):
        remote = parse_url("https://github.example.com/acme/repo/blob/dev/README.md")
        assert remote is not None
        assert remote.raw_file_location("devfile.yaml") == (
            "https://github.example.com/raw/acme/repo/dev/devfile.yaml"
        )

    def test_clone_url(self):
        remote = parse_url("git@github.com:acme/repo.git")
        assert remote is not None
        assert remote.clone_url == "https://github.com/acme/repo.git"

    def test_devfile_locations_use_default_names(self):
        remote = parse_url("https://github.com/acme/repo")
        assert remote is not None
        assert remote.devfile_file_locations() == [
            DevfileLocation(
                "devfile.yaml", "https://raw.githubusercontent.com/acme/repo/HEAD/devfile.yaml"
            ),
            DevfileLocation(
                ".devfile.yaml", "https://raw.githubusercontent.com/acme/repo/HEAD/.devfile.yaml"
            ),
        ]

    def test_custom_devfile_names(self):
        remote = parse_url("https://github.com/acme/repo", ["custom.yaml"])
        assert remote is not None
        assert [loc.filename for loc in remote.devfile_file_locations()] == ["custom.yaml"]

    def test_descriptor_is_immutable(self):
        remote = parse_url("https://github.com/acme/repo")
        with pytest.raises(AttributeError):
            remote.branch = "main"  # type: ignore[misc,union-attr]


# =====================================================================
# GitLab
# =====================================================================


class TestGitlabUrl:
    def test_subgroups_and_branch(self):
        remote = parse_url("https://gitlab.com/group/sub/project/-/tree/main")
        assert isinstance(remote, GitlabUrl)
        assert remote.subgroups == "group/sub/project"
        assert remote.project == "project"
        assert remote.branch == "main"

    def test_raw_location_encodes_project_path(self):
        remote = parse_url("https://gitlab.com/group/sub/project/-/tree/main")
        assert remote is not None
        assert remote.raw_file_location("devfile.yaml") == (
            "https://gitlab.com/api/v4/projects/group%2Fsub%2Fproject"
            "/repository/files/devfile.yaml/raw?ref=main"
        )

    def test_self_managed_clone_url(self):
        remote = parse_url("git@gitlab.example.com:team/app.git")
        assert isinstance(remote, GitlabUrl)
        assert remote.clone_url == "https://gitlab.example.com/team/app.git"
        assert remote.branch == "HEAD"


# =====================================================================
# Bitbucket Server
# =====================================================================


class TestBitbucketServerUrl:
    def test_browse_url_end_to_end(self):
        remote = parse_url("https://bb.example.com/projects/ACME/repos/app/browse?at=release")
        assert isinstance(remote, BitbucketServerUrl)
        assert remote.project == "ACME"
        assert remote.user is None
        assert remote.branch == "release"
        assert remote.raw_file_location("devfile.yaml") == (
            "https://bb.example.com/rest/api/1.0/projects/ACME/repos/app/raw/devfile.yaml?at=release"
        )

    def test_personal_repository(self):
        remote = parse_url("https://bb.example.com/scm/~alice/app.git")
        assert isinstance(remote, BitbucketServerUrl)
        assert remote.user == "alice"
        assert remote.project is None
        assert remote.raw_file_location("devfile.yaml") == (
            "https://bb.example.com/rest/api/1.0/users/alice/repos/app/raw/devfile.yaml"
        )
        assert remote.clone_url == "https://bb.example.com/scm/~alice/app.git"

    def test_users_path(self):
        remote = parse_url("https://bb.example.com/users/bob/repos/tools/browse")
        assert isinstance(remote, BitbucketServerUrl)
        assert remote.user == "bob"
        assert remote.repository == "tools"

    def test_ssh_clone_url_rewritten(self):
        remote = parse_url("ssh://git@bb.example.com:7999/acme/app.git")
        assert isinstance(remote, BitbucketServerUrl)
        assert remote.provider_url == "https://bb.example.com"
        assert remote.project == "acme"
        assert remote.clone_url == "https://bb.example.com/scm/acme/app.git"

    def test_port_kept_in_provider_url(self):
        remote = parse_url("https://bb.example.com:8443/scm/acme/app.git")
        assert remote is not None
        assert remote.provider_url == "https://bb.example.com:8443"

    def test_missing_repository_rejected(self):
        assert BitbucketServerUrl.parse("https://bb.example.com/projects/ACME/repos") is None


# =====================================================================
# Bitbucket Cloud
# =====================================================================


class TestBitbucketUrl:
    def test_user_info_dropped(self):
        remote = parse_url("https://alice@bitbucket.org/ws/repo.git")
        assert isinstance(remote, BitbucketUrl)
        assert remote.provider_url == "https://bitbucket.org"
        assert remote.workspace == "ws"
        assert remote.repository == "repo"

    def test_branch_from_src(self):
        remote = parse_url("https://bitbucket.org/ws/repo/src/feature/README.md")
        assert remote is not None
        assert remote.branch == "feature"
        assert remote.raw_file_location("devfile.yaml") == (
            "https://api.bitbucket.org/2.0/repositories/ws/repo/src/feature/devfile.yaml"
        )


# =====================================================================
# Azure DevOps
# =====================================================================


class TestAzureDevOpsUrl:
    def test_branch_from_version(self):
        remote = parse_url("https://dev.azure.com/org/proj/_git/repo?version=GBfeature")
        assert isinstance(remote, AzureDevOpsUrl)
        assert (remote.organization, remote.project, remote.repository) == ("org", "proj", "repo")
        assert remote.branch == "feature"
        assert remote.raw_file_location("devfile.yaml") == (
            "https://dev.azure.com/org/proj/_apis/git/repositories/repo/items"
            "?path=/devfile.yaml&api-version=7.0"
            "&versionDescriptor.version=feature&versionDescriptor.versionType=branch"
        )

    def test_default_branch_has_no_version_descriptor(self):
        remote = parse_url("https://dev.azure.com/org/proj/_git/repo")
        assert remote is not None
        assert "versionDescriptor" not in remote.raw_file_location("devfile.yaml")

    def test_project_named_after_repo(self):
        remote = parse_url("https://dev.azure.com/org/_git/repo")
        assert isinstance(remote, AzureDevOpsUrl)
        assert remote.project == "repo"

    def test_legacy_visualstudio_host(self):
        remote = parse_url("https://org.visualstudio.com/proj/_git/repo")
        assert isinstance(remote, AzureDevOpsUrl)
        assert remote.organization == "org"
        assert remote.clone_url == "https://dev.azure.com/org/proj/_git/repo"

    def test_ssh_form(self):
        remote = parse_url("git@ssh.dev.azure.com:v3/org/proj/repo")
        assert remote == parse_url("https://dev.azure.com/org/proj/_git/repo")


# =====================================================================
# Helpers
# =====================================================================


class TestNormalizeScmUrl:
    def test_scp_like(self):
        assert normalize_scm_url("git@host.example.com:a/b.git") == "https://host.example.com/a/b.git"

    def test_https_untouched(self):
        assert normalize_scm_url(" https://host/a/b ") == "https://host/a/b"
