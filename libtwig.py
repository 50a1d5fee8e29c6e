import argparse
import configparser
import contextlib
import enum
import hashlib
import io
import logging
import os
import re
import stat
import sys
import tempfile
import zlib
from dataclasses import dataclass

import structlog

log = structlog.get_logger("twig")

argparser = argparse.ArgumentParser(prog="twig", description="A small content tracker")
argparser.add_argument("-v", "--verbose", action="store_true", help="Log debug events to stderr")

argsubparsers = argparser.add_subparsers(title="Commands", dest="command")
argsubparsers.required = True

# Object kinds understood by the codec.  Tags can be framed and stored,
# but there is no model to decode them.
KINDS = (b"commit", b"tree", b"tag", b"blob")

# Recursion bounds for tampered or pathological stores.
TREE_MAX_DEPTH = 512
REF_MAX_DEPTH = 10

DEFAULT_DESCRIPTION = "Unnamed repository; edit this file 'description' to name the repository.\n"
DEFAULT_HEAD = "ref: refs/heads/master\n"


def main(argv=None):
    args = argparser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else None)

    try:
        match args.command:
            case "cat-file"     : cmd_cat_file(args)
            case "checkout"     : cmd_checkout(args)
            case "hash-object"  : cmd_hash_object(args)
            case "init"         : cmd_init(args)
            case "log"          : cmd_log(args)
            case "ls-tree"      : cmd_ls_tree(args)
            case "rev-parse"    : cmd_rev_parse(args)
            case "show-ref"     : cmd_show_ref(args)
            case "tag"          : cmd_tag(args)
            case _              : print("Bad Command", file=sys.stderr)
    except (TwigError, OSError, NotImplementedError) as e:
        print(f"twig: {e}", file=sys.stderr)
        return 1
    return 0


# Errors
# ======


class TwigError(Exception):
    """Base exception for twig errors."""


class RepositoryExistsError(TwigError, FileExistsError):
    """A repository is already present at the target path."""


class NotFoundError(TwigError, FileNotFoundError):
    """Base exception for anything looked up and not found."""


class RepositoryNotFoundError(NotFoundError):
    pass


class ObjectNotFoundError(NotFoundError):
    pass


class RefNotFoundError(NotFoundError):
    pass


class NotARepositoryError(TwigError, NotADirectoryError):
    """The path given for a repository is not a directory."""


class RepositoryFormatError(TwigError):
    """The repository configuration is missing or unsupported."""


class InvalidArgumentError(TwigError, ValueError):
    pass


class AmbiguousNameError(InvalidArgumentError):
    """A name matches more than one object."""

    def __init__(self, message, *, candidates=()):
        super().__init__(message)
        self.candidates = list(candidates)


class CorruptDataError(TwigError, ValueError):
    """Stored data does not follow the expected format."""


class DeserializeError(CorruptDataError):
    """An object frame was valid but its payload could not be decoded."""

    def __init__(self, message, *, fmt=None, sha=None):
        super().__init__(message)
        self.fmt = fmt
        self.sha = sha


class TreeDepthError(CorruptDataError):
    """Tree nesting exceeded the configured bound."""


class UnexpectedKindError(TwigError, TypeError):
    """An object decoded to a kind the caller cannot handle."""


# Logging
# =======


def _get_log_level():
    """Get the log level from TWIG_DEBUG, then TWIG_LOG_LEVEL.

    Defaults to WARNING so command output stays clean.
    """
    if os.getenv("TWIG_DEBUG"):
        return logging.DEBUG

    log_levels = logging.getLevelNamesMapping()
    return log_levels.get(os.getenv("TWIG_LOG_LEVEL", "warning").upper(), logging.WARNING)


def configure_logging(level=None):
    """Route twig's structlog events to stderr, filtered at level."""
    if level is None:
        level = _get_log_level()

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


# Repository
# ==========


class TwigRepository(object):
    """A twig repository"""

    worktree = None
    gitdir = None
    conf = None

    def __init__(self, path, force=False) -> None:
        self.worktree = path
        self.gitdir = os.path.join(path, ".git")

        if not (force or os.path.isdir(path)):
            raise NotARepositoryError(f"Not a directory {path}")

        if not (force or os.path.isdir(self.gitdir)):
            raise RepositoryNotFoundError(f"Not a twig repository {path}")

        # Read configuration file in .git/config
        self.conf = configparser.ConfigParser()
        cf = repo_path(self, "config")

        if os.path.exists(cf):
            try:
                self.conf.read([cf])
            except configparser.Error as e:
                raise RepositoryFormatError(f"Unreadable configuration file {cf}") from e
        elif not force:
            raise RepositoryFormatError(f"Configuration file is missing: {cf}")

        if not force:
            try:
                vers = self.conf.getint("core", "repositoryformatversion")
            except (configparser.Error, ValueError) as e:
                raise RepositoryFormatError(f"Bad repositoryformatversion in {cf}") from e
            if vers != 0:
                raise RepositoryFormatError(f"Unsupported repositoryformatversion {vers}")


def repo_path(repo, *path):
    """Compute path under repo's gitdir."""
    return os.path.join(repo.gitdir, *path)


def repo_file(repo, *path, mkdir=False):
    """Same as repo_path, but create dirname(*path) if absent and mkdir.
    For example, repo_file(r, "refs", "remotes", "origin", "HEAD", mkdir=True)
    will create .git/refs/remotes/origin."""

    if len(path) > 1:
        repo_dir(repo, *path[:-1], mkdir=mkdir)
    return repo_path(repo, *path)


def repo_dir(repo, *path, mkdir=False):
    """Same as repo_path, but mkdir *path if absent if mkdir.  Raises
    NotFoundError if absent and not mkdir."""

    path = repo_path(repo, *path)

    if os.path.exists(path):
        if os.path.isdir(path):
            return path
        raise NotADirectoryError(f"Not a directory {path}")

    if not mkdir:
        raise NotFoundError(f"No such directory {path}")

    os.makedirs(path)
    return path


def repo_write_file(repo, content, *path, mkdir=False):
    """Write content (bytes) to a file under repo's gitdir."""
    target = repo_file(repo, *path, mkdir=mkdir)
    write_file_atomic(target, content)
    return target


def write_file_atomic(path, content):
    """Replace path with content, never leaving a half-written file behind."""
    fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path) or ".", prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.chmod(tmp, _file_mode(path))
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


def _file_mode(path):
    # Keep the mode of the file being replaced, else honour the umask.
    try:
        return stat.S_IMODE(os.stat(path).st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def repo_create(path):
    """Create a new repository at path."""

    # First make sure the worktree is a directory and has no .git yet.
    # This must happen before opening a handle, which reads .git/config.
    gitdir = os.path.join(path, ".git")
    if os.path.exists(path):
        if not os.path.isdir(path):
            raise NotARepositoryError(f"{path} is not a directory!")
        if os.path.lexists(gitdir):
            raise RepositoryExistsError(f"Already a twig repository: {gitdir}")
    else:
        os.makedirs(path)

    repo = TwigRepository(path, True)

    os.makedirs(repo.gitdir)
    repo_dir(repo, "branches", mkdir=True)
    repo_dir(repo, "objects", mkdir=True)
    repo_dir(repo, "refs", "tags", mkdir=True)
    repo_dir(repo, "refs", "heads", mkdir=True)

    repo_write_file(repo, DEFAULT_DESCRIPTION.encode(), "description")
    repo_write_file(repo, DEFAULT_HEAD.encode(), "HEAD")

    buf = io.StringIO()
    repo_default_config().write(buf)
    repo_write_file(repo, buf.getvalue().encode(), "config")

    log.info("repository_created", gitdir=repo.gitdir)
    return TwigRepository(path)


def repo_find(path=".", required=True):
    path = os.path.realpath(path)

    if os.path.isdir(os.path.join(path, ".git")):
        return TwigRepository(path)

    # If we haven't returned, recurse in parent.
    parent = os.path.realpath(os.path.join(path, ".."))

    if parent == path:
        # Bottom case: os.path.join("/", "..") == "/", so path is root.
        if required:
            raise RepositoryNotFoundError("No twig directory.")
        return None

    return repo_find(parent, required)


def repo_default_config():
    ret = configparser.ConfigParser()

    ret.add_section("core")
    ret.set("core", "repositoryformatversion", "0")
    ret.set("core", "filemode", "false")
    ret.set("core", "bare", "false")

    return ret


# Objects
# =======


class TwigObject(object):
    fmt = None

    def __init__(self, data=None):
        if data is not None:
            self.deserialize(data)
        else:
            self.init()

    def init(self):
        pass

    def deserialize(self, data):
        raise NotImplementedError

    def serialize(self):
        raise NotImplementedError

    def __eq__(self, other):
        return type(self) is type(other) and vars(self) == vars(other)

    def __repr__(self):
        return f"{type(self).__name__}({vars(self)!r})"


class TwigBlob(TwigObject):
    fmt = b"blob"

    def init(self):
        self.blobdata = b""

    def serialize(self):
        return self.blobdata

    def deserialize(self, data):
        self.blobdata = bytes(data)


@dataclass
class TwigTreeLeaf:
    # Mode is the decimal reading of the mode token, so b"40000" is 40000.
    mode: int
    path: str
    sha: bytes


class TwigTree(TwigObject):
    fmt = b"tree"

    def init(self):
        self.items = list()

    def deserialize(self, data):
        self.items = tree_parse(data)

    def serialize(self):
        return tree_serialize(self)


class TwigCommit(TwigObject):
    """A commit: header multimap (key to list of values) and a message.

    Header values are kept as text; tree and parent values are hex
    identifiers.
    """

    fmt = b"commit"

    def init(self):
        self.header = dict()
        self.comment = ""

    def deserialize(self, data):
        header, message = kvlm_parse(data)
        self.header = {
            _text(k): [_text(v) for v in values] for k, values in header.items()
        }
        self.comment = _text(message)

    def serialize(self):
        raise NotImplementedError("commit serialization is not supported")


def _text(raw):
    # Lossless: names and headers are not guaranteed to be utf8.
    return raw.decode("utf8", errors="surrogateescape")


def _raw(text):
    return text.encode("utf8", errors="surrogateescape")


def tree_parse_one(raw, start=0):
    # Find the space terminator of the mode
    x = raw.find(b" ", start)
    if x < 0:
        raise CorruptDataError(f"Truncated tree entry at offset {start}: no mode terminator")

    mode = raw[start:x]
    if not mode.isdigit():
        raise CorruptDataError(f"Invalid tree entry mode {mode!r} at offset {start}")

    # Find the NULL terminator of the path
    y = raw.find(b"\x00", x)
    if y < 0:
        raise CorruptDataError(f"Truncated tree entry at offset {start}: no path terminator")
    path = raw[x + 1:y]

    # The SHA is 20 raw bytes right after the terminator
    sha = raw[y + 1:y + 21]
    if len(sha) != 20:
        raise CorruptDataError(f"Truncated tree entry at offset {start}: short identifier")

    return y + 21, TwigTreeLeaf(int(mode), _text(path), bytes(sha))


def tree_parse(raw):
    pos = 0
    max = len(raw)
    ret = list()
    while pos < max:
        pos, data = tree_parse_one(raw, pos)
        ret.append(data)
    return ret


def tree_serialize(obj):
    ret = []
    for i in obj.items:
        path = _raw(i.path)
        if b"\x00" in path:
            raise InvalidArgumentError(f"Tree entry name contains NUL: {i.path!r}")
        if len(i.sha) != 20:
            raise InvalidArgumentError(f"Tree entry {i.path!r} has a {len(i.sha)}-byte identifier")
        ret.append(b"%d %s\x00%s" % (i.mode, path, i.sha))
    return b"".join(ret)


class _KvlmState(enum.Enum):
    AWAITING_KEY = enum.auto()
    IN_KEY = enum.auto()
    IN_VALUE = enum.auto()
    DONE = enum.auto()


_SP = ord(" ")
_NL = ord("\n")


def kvlm_parse(raw):
    """Parse a commit payload into (header, message).

    header maps each key to the list of its values, in order, so repeated
    keys such as parent keep every value.  A blank line ends the header and
    the rest is the message.  A newline followed by a space continues the
    current value.
    """
    raw = bytes(raw)
    header = dict()
    state = _KvlmState.AWAITING_KEY
    key = None
    start = pos = 0
    end = len(raw)

    while state is not _KvlmState.DONE:
        if pos >= end:
            # A pending key with no value is dropped.
            if state is _KvlmState.IN_VALUE and pos > start:
                header.setdefault(key, []).append(raw[start:pos].replace(b"\n ", b"\n"))
            state = _KvlmState.DONE
            break

        c = raw[pos]
        match state:
            case _KvlmState.AWAITING_KEY:
                if c == _NL:
                    # Blank line: end of header.
                    pos += 1
                    state = _KvlmState.DONE
                elif c == _SP:
                    raise CorruptDataError(f"Commit header line at offset {pos} has no key")
                else:
                    start = pos
                    pos += 1
                    state = _KvlmState.IN_KEY
            case _KvlmState.IN_KEY:
                if c == _SP:
                    key = raw[start:pos]
                    pos += 1
                    start = pos
                    state = _KvlmState.IN_VALUE
                elif c == _NL:
                    # A line with no key files its text under the empty key.
                    header.setdefault(b"", []).append(raw[start:pos])
                    pos += 1
                    state = _KvlmState.AWAITING_KEY
                else:
                    pos += 1
            case _KvlmState.IN_VALUE:
                if c == _NL and raw[pos + 1:pos + 2] == b" ":
                    pos += 2
                elif c == _NL:
                    header.setdefault(key, []).append(raw[start:pos].replace(b"\n ", b"\n"))
                    pos += 1
                    state = _KvlmState.AWAITING_KEY
                else:
                    pos += 1

    return header, raw[pos:]


def _check_sha(sha):
    if not isinstance(sha, (bytes, bytearray)) or len(sha) != 20:
        size = len(sha) if hasattr(sha, "__len__") else "?"
        raise InvalidArgumentError(f"Object identifier must be 20 bytes, got {size}")
    return bytes(sha)


_hexRe = re.compile(r"^[0-9a-f]{40}$")


def sha_from_hex(hexsha):
    """Decode a 40-char hex identifier into its 20 raw bytes."""
    if not _hexRe.match(hexsha.lower()):
        raise InvalidArgumentError(f"Not a full hex identifier: {hexsha!r}")
    return bytes.fromhex(hexsha)


def _normalize_fmt(fmt):
    if isinstance(fmt, str):
        fmt = fmt.encode("ascii", errors="replace")
    if fmt not in KINDS:
        raise InvalidArgumentError(f"Unknown object type {fmt!r}")
    return fmt


def object_frame(fmt, data):
    return fmt + b" " + str(len(data)).encode() + b"\x00" + data


def object_sha(frame):
    return hashlib.sha1(frame).digest()


def object_read_raw(repo, sha):
    """Read object sha from repo and return (fmt, payload), undecoded."""
    sha = _check_sha(sha)
    hexsha = sha.hex()
    path = repo_path(repo, "objects", hexsha[0:2], hexsha[2:])

    try:
        with open(path, "rb") as f:
            compressed = f.read()
    except FileNotFoundError as e:
        raise ObjectNotFoundError(f"No such object {hexsha}") from e

    try:
        raw = zlib.decompress(compressed)
    except zlib.error as e:
        raise CorruptDataError(f"Malformed object {hexsha}: cannot decompress") from e

    # Read object type
    x = raw.find(b" ")
    if x < 0:
        raise CorruptDataError(f"Malformed object {hexsha}: no type")
    fmt = raw[0:x]
    if fmt not in KINDS:
        raise CorruptDataError(f"Unknown type {fmt!r} for object {hexsha}")

    # Read and validate object size
    y = raw.find(b"\x00", x)
    if y < 0:
        raise CorruptDataError(f"Malformed object {hexsha}: no size")
    size = raw[x + 1:y]
    if not size.isdigit():
        raise CorruptDataError(f"Malformed object {hexsha}: bad size {size!r}")
    if int(size) != len(raw) - y - 1:
        raise CorruptDataError(f"Malformed object {hexsha}: bad length")

    log.debug("object_read", sha=hexsha, fmt=fmt.decode())
    return fmt, raw[y + 1:]


def object_read(repo, sha):
    """Read object sha from repository repo.  Return a TwigObject whose
    exact type depends on the object."""

    fmt, data = object_read_raw(repo, sha)

    # Pick constructor
    match fmt:
        case b"commit" : c = TwigCommit
        case b"tree"   : c = TwigTree
        case b"blob"   : c = TwigBlob
        case b"tag"    : raise NotImplementedError(f"tag objects are not supported ({sha.hex()})")

    try:
        return c(data)
    except CorruptDataError as e:
        raise DeserializeError(
            f"Cannot decode {fmt.decode()} object {sha.hex()}: {e}", fmt=fmt, sha=sha
        ) from e


def object_write(repo, fmt, data):
    """Store data as an object of type fmt in repo and return its identifier."""
    fmt = _normalize_fmt(fmt)
    frame = object_frame(fmt, bytes(data))
    sha = object_sha(frame)
    hexsha = sha.hex()

    path = repo_file(repo, "objects", hexsha[0:2], hexsha[2:], mkdir=True)
    write_file_atomic(path, zlib.compress(frame))

    log.debug("object_written", sha=hexsha, fmt=fmt.decode(), size=len(data))
    return sha


def object_hash(fd, fmt, repo=None):
    """Hash object, writing it to the repo if provided"""
    data = fd.read()
    fmt = _normalize_fmt(fmt)

    # Make sure data decodes as fmt before hashing it
    match fmt:
        case b"commit" : TwigCommit(data)
        case b"tree"   : TwigTree(data)
        case b"blob"   : TwigBlob(data)
        case b"tag"    : raise NotImplementedError("tag objects are not supported")

    if repo is None:
        return object_sha(object_frame(fmt, data))
    return object_write(repo, fmt, data)


# References
# ==========


def ref_resolve(repo, ref):
    """Follow ref (a path under gitdir, such as "HEAD") through any
    "ref: " indirections and return the identifier it points at."""
    if not _is_ref_path(ref):
        raise InvalidArgumentError(f"Ref {ref!r} is outside the repository")

    name = ref
    for _ in range(REF_MAX_DEPTH):
        path = repo_path(repo, name)

        # An indirect reference may be dangling.  This is normal on a new
        # repository: HEAD points to refs/heads/master, which does not
        # exist before the first commit.
        if not os.path.isfile(path):
            raise RefNotFoundError(f"No such ref {name}")

        with open(path, "r") as fp:
            data = fp.read().strip()

        if data.startswith("ref:"):
            name = data[4:].strip()
            if not _is_ref_path(name):
                raise CorruptDataError(f"Ref {ref} points outside the repository: {name!r}")
            continue

        try:
            sha = sha_from_hex(data)
        except InvalidArgumentError as e:
            raise CorruptDataError(f"Malformed ref {name}: {data!r}") from e
        log.debug("ref_resolved", ref=ref, sha=data)
        return sha

    raise CorruptDataError(f"Too many levels of indirection resolving {ref}")


def _is_ref_path(name):
    if not name or os.path.isabs(name) or "\x00" in name:
        return False
    norm = os.path.normpath(name)
    return norm != ".." and not norm.startswith(".." + os.sep)


def ref_list(repo, path=None):
    if not path:
        path = repo_dir(repo, "refs")

    ret = dict()
    # Show refs sorted
    for f in sorted(os.listdir(path)):
        can = os.path.join(path, f)
        if os.path.isdir(can):
            ret[f] = ref_list(repo, can)
        else:
            try:
                ret[f] = ref_resolve(repo, os.path.relpath(can, repo.gitdir))
            except RefNotFoundError:
                continue
    return ret


def ref_create(repo, ref_name, sha):
    parts = ref_name.split("/")
    if any(p in ("", ".", "..") for p in parts):
        raise InvalidArgumentError(f"Invalid ref name {ref_name!r}")
    repo_write_file(repo, (_check_sha(sha).hex() + "\n").encode(), "refs", *parts, mkdir=True)


def tag_create(repo, name, ref):
    """Create a lightweight tag name pointing at whatever ref resolves to."""
    sha = object_find(repo, ref)
    ref_create(repo, "tags/" + name, sha)
    return sha


def object_resolve(repo, name):
    """Resolve name to the object hashes it may stand for in repo.
    This function is aware of:

    - the HEAD literal
    - short and long hashes
    - tags
    - branches
    """

    candidates = list()
    hashRe = re.compile(r"^[0-9A-Fa-f]{4,40}$")

    # Empty string? Abort.
    if not name.strip():
        return candidates

    # HEAD is nonambiguous
    if name == "HEAD":
        with contextlib.suppress(RefNotFoundError):
            candidates.append(ref_resolve(repo, "HEAD"))
        return candidates

    # If it's a hex string, try for a hash.  4 seems to be the minimal
    # length for a short hash.
    if hashRe.match(name):
        name = name.lower()
        prefix = name[0:2]
        path = repo_path(repo, "objects", prefix)
        if os.path.isdir(path):
            rem = name[2:]
            for f in sorted(os.listdir(path)):
                if f.startswith(rem) and _hexRe.match(prefix + f):
                    candidates.append(bytes.fromhex(prefix + f))

    # Try for references.
    for ref in ("refs/tags/" + name, "refs/heads/" + name):
        with contextlib.suppress(RefNotFoundError):
            candidates.append(ref_resolve(repo, ref))

    # A name may reach the same object twice, e.g. a tag and a branch.
    return list(dict.fromkeys(candidates))


def object_find(repo, name, fmt=None, follow=True):
    candidates = object_resolve(repo, name)

    if not candidates:
        raise RefNotFoundError(f"No such reference {name}.")

    if len(candidates) > 1:
        listing = "\n - ".join(c.hex() for c in candidates)
        raise AmbiguousNameError(
            f"Ambiguous reference {name}: Candidates are:\n - {listing}.", candidates=candidates
        )

    sha = candidates[0]

    if not fmt:
        return sha
    fmt = _normalize_fmt(fmt)

    while True:
        kind, data = object_read_raw(repo, sha)

        if kind == fmt:
            return sha

        if not (follow and kind == b"commit" and fmt == b"tree"):
            raise UnexpectedKindError(f"{name} is a {kind.decode()}, not a {fmt.decode()}")

        # Follow commits to their tree
        sha = commit_tree(TwigCommit(data), sha)


def commit_tree(commit, sha=b""):
    """Return the identifier of the tree commit points at."""
    trees = commit.header.get("tree", [])
    if len(trees) != 1:
        raise CorruptDataError(f"Commit {sha.hex()} has {len(trees)} tree headers")
    return _header_sha(trees[0], sha)


def _header_sha(value, sha):
    try:
        return sha_from_hex(value)
    except InvalidArgumentError as e:
        raise CorruptDataError(f"Commit {sha.hex()} has a malformed identifier {value!r}") from e


# Commands on objects
# ===================


def log_walk(repo, sha, seen=None):
    """Yield (sha, commit) for sha and all of its ancestors, depth first.

    Each commit is read and yielded once, even when several descendants
    share it.  Commits already in seen are skipped; seen is updated.
    """
    if seen is None:
        seen = set()

    stack = [_check_sha(sha)]
    while stack:
        sha = stack.pop()
        if sha in seen:
            continue
        seen.add(sha)

        commit = object_read(repo, sha)
        if not isinstance(commit, TwigCommit):
            raise UnexpectedKindError(f"Not a commit: {sha.hex()} is a {commit.fmt.decode()}")
        yield sha, commit

        parents = commit.header.get("parent", [])
        stack.extend(_header_sha(p, sha) for p in reversed(parents))


def log_edges(repo, sha, seen=None):
    """Yield one (child, parent) hex pair per parent link reachable from sha."""
    for sha, commit in log_walk(repo, sha, seen):
        for p in commit.header.get("parent", []):
            yield sha.hex(), p


def log_graphviz(repo, sha, out=None):
    out = out or sys.stdout
    print("digraph twiglog{", file=out)
    print("  node[shape=rect]", file=out)

    for sha, commit in log_walk(repo, sha):
        hexsha = sha.hex()
        message = commit.comment.strip()
        message = message.replace("\\", "\\\\")
        message = message.replace("\"", "\\\"")

        if "\n" in message:
            message = message[:message.index("\n")]

        print(f"  c_{hexsha} [label=\"{hexsha[0:7]}: {message}\"]", file=out)
        for p in commit.header.get("parent", []):
            print(f"  c_{hexsha} -> c_{p};", file=out)

    print("}", file=out)


def ls_tree(repo, sha, recursive=False, prefix=""):
    """Yield (mode, type, hexsha, path) for each entry of tree sha."""
    obj = object_read(repo, sha)
    if not isinstance(obj, TwigTree):
        raise UnexpectedKindError(f"Not a tree: {sha.hex()}")

    for item in obj.items:
        mode = f"{item.mode:06d}"

        match mode[0:2]:  # Determine the type.
            case "04" : type = "tree"
            case "10" : type = "blob"    # A regular file.
            case "12" : type = "blob"    # A symlink.  Blob contents is link target.
            case "16" : type = "commit"  # A submodule
            case _: raise CorruptDataError(f"Weird tree leaf mode {item.mode}")

        path = os.path.join(prefix, item.path)
        if not (recursive and type == "tree"):  # This is a leaf
            yield mode, type, item.sha.hex(), path
        else:  # This is a branch, recurse
            yield from ls_tree(repo, item.sha, recursive, path)


def _check_leaf_name(name):
    if name in ("", ".", "..") or "/" in name or "\x00" in name:
        raise CorruptDataError(f"Unsafe tree entry name {name!r}")
    # Never write into a metadata directory.
    if name.lower() == ".git":
        raise CorruptDataError(f"Unsafe tree entry name {name!r}")


def tree_checkout(repo, tree, path, max_depth=TREE_MAX_DEPTH):
    """Write tree's contents under directory path: blobs become files,
    subtrees become directories.  Files already present are overwritten.

    Not transactional: on error, entries written so far are left in place.
    """
    log.info("checkout_started", path=path)
    stack = [(tree, path, 0)]

    while stack:
        tree, path, depth = stack.pop()
        subtrees = []

        for item in tree.items:
            _check_leaf_name(item.path)
            obj = object_read(repo, item.sha)
            dest = os.path.join(path, item.path)

            match obj:
                case TwigTree():
                    if depth + 1 > max_depth:
                        raise TreeDepthError(f"Tree nesting deeper than {max_depth} at {dest}")
                    os.makedirs(dest, exist_ok=True)
                    subtrees.append((obj, dest, depth + 1))
                case TwigBlob():
                    # TODO Support symlinks (identified by mode 12****)
                    write_file_atomic(dest, obj.blobdata)
                case _:
                    raise UnexpectedKindError(f"Unexpected {obj.fmt.decode()} {item.sha.hex()} at {dest}")

        # Keep tree order when popping.
        stack.extend(reversed(subtrees))


def cat_file(repo, obj, fmt=None):
    return object_read_raw(repo, object_find(repo, obj, fmt=fmt))[1]


# Command line
# ============

# init
argsp = argsubparsers.add_parser("init", help="Initialize a new, empty repository.")
argsp.add_argument("path", metavar="directory", nargs="?", default=".", help="Where to create the repository.")

# cat-file
argsp = argsubparsers.add_parser("cat-file", help="Provide content of repository objects.")
argsp.add_argument("type", metavar="type", choices=["blob", "commit", "tree"], help="Specify the type.")
argsp.add_argument("object", metavar="object", help="The object to display.")

# hash-object
argsp = argsubparsers.add_parser("hash-object", help="Compute object ID and optionally creates a blob from a file.")
argsp.add_argument("-t", metavar="type", dest="type", choices=["blob", "commit", "tree"], default="blob", help="Specify the type.")
argsp.add_argument("-w", dest="write", action="store_true", help="Actually write the object into the database.")
argsp.add_argument("path", help="Read object from <file>.")

# log
argsp = argsubparsers.add_parser("log", help="Display history of a given commit as a Graphviz digraph.")
argsp.add_argument("commit", default="HEAD", nargs="?", help="Commit to start at.")

# ls-tree
argsp = argsubparsers.add_parser("ls-tree", help="Pretty-print a tree object.")
argsp.add_argument("-r", dest="recursive", action="store_true", help="Recurse into sub-trees.")
argsp.add_argument("tree", help="A tree-ish object.")

# checkout
argsp = argsubparsers.add_parser("checkout", help="Checkout a commit inside of a directory.")
argsp.add_argument("commit", help="The commit or tree to checkout.")
argsp.add_argument("path", help="The EMPTY directory to checkout on.")

# show-ref
argsp = argsubparsers.add_parser("show-ref", help="List references.")

# tag
argsp = argsubparsers.add_parser("tag", help="List and create tags.")
argsp.add_argument("name", nargs="?", help="The new tag's name.")
argsp.add_argument("object", default="HEAD", nargs="?", help="The object the new tag will point to.")

# rev-parse
argsp = argsubparsers.add_parser("rev-parse", help="Parse revision (or other objects) identifiers.")
argsp.add_argument("--twig-type", metavar="type", dest="type", choices=["blob", "commit", "tree"], default=None, help="Specify the expected type.")
argsp.add_argument("name", help="The name to parse.")


def cmd_init(args):
    repo_create(args.path)


def cmd_cat_file(args):
    repo = repo_find()
    sys.stdout.buffer.write(cat_file(repo, args.object, fmt=args.type))
    sys.stdout.flush()


def cmd_hash_object(args):
    repo = repo_find() if args.write else None

    with open(args.path, "rb") as fd:
        sha = object_hash(fd, args.type, repo)
        print(sha.hex())


def cmd_log(args):
    repo = repo_find()
    log_graphviz(repo, object_find(repo, args.commit, fmt="commit"))


def cmd_ls_tree(args):
    repo = repo_find()
    for mode, type, hexsha, path in ls_tree(repo, object_find(repo, args.tree, fmt="tree"), args.recursive):
        print(f"{mode} {type} {hexsha}\t{path}")


def cmd_checkout(args):
    repo = repo_find()

    obj = object_read(repo, object_find(repo, args.commit))

    # If the object is a commit, we grab its tree
    if isinstance(obj, TwigCommit):
        obj = object_read(repo, commit_tree(obj))
    if not isinstance(obj, TwigTree):
        raise UnexpectedKindError(f"Cannot checkout a {obj.fmt.decode()}")

    # Verify that path is an empty directory
    if os.path.exists(args.path):
        if not os.path.isdir(args.path):
            raise NotADirectoryError(f"Not a directory {args.path}!")
        if os.listdir(args.path):
            raise InvalidArgumentError(f"Not empty {args.path}!")
    else:
        os.makedirs(args.path)

    tree_checkout(repo, obj, os.path.realpath(args.path))


def cmd_show_ref(args):
    repo = repo_find()
    show_ref(ref_list(repo), prefix="refs")


def show_ref(refs, with_hash=True, prefix=""):
    if prefix:
        prefix = prefix + "/"
    for k, v in refs.items():
        if isinstance(v, bytes) and with_hash:
            print(f"{v.hex()} {prefix}{k}")
        elif isinstance(v, bytes):
            print(f"{prefix}{k}")
        else:
            show_ref(v, with_hash=with_hash, prefix=f"{prefix}{k}")


def cmd_tag(args):
    repo = repo_find()

    if args.name:
        tag_create(repo, args.name, args.object)
    else:
        show_ref(ref_list(repo).get("tags", {}), with_hash=False)


def cmd_rev_parse(args):
    repo = repo_find()
    print(object_find(repo, args.name, args.type, follow=True).hex())
