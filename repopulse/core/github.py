"""GitHub repository reference parsing."""


def parse_repo_ref(ref: str) -> tuple[str, str]:
    """Extract (owner, repo) from a GitHub URL or an ``owner/repo`` shorthand.

    Raises ValueError if the reference cannot be parsed.
    """
    result = _extract_owner_repo(ref)
    if result is None:
        raise ValueError(f"cannot parse GitHub repo reference: {ref!r}")
    owner, repo = result.split("/", 1)
    return owner, repo


def _extract_owner_repo(ref: str) -> str | None:
    """Extract 'owner/repo' from a GitHub reference.

    Handles:
      - owner/repo
      - https://github.com/owner/repo
      - https://github.com/owner/repo.git
      - git@github.com:owner/repo.git
    """
    ref = ref.strip().rstrip("/")
    if ref.endswith(".git"):
        ref = ref[:-4]

    # SSH format: git@github.com:owner/repo
    if ref.startswith("git@"):
        colon_idx = ref.find(":")
        if colon_idx == -1:
            return None
        ref = ref[colon_idx + 1 :]

    if "://" in ref:
        ref = ref.split("://", 1)[1]
        parts = ref.split("/")[1:]  # drop the host
    else:
        parts = ref.split("/")
        if parts and parts[0] == "github.com":
            parts = parts[1:]

    if len(parts) == 2 and all(parts):
        return f"{parts[0]}/{parts[1]}"
    return None
