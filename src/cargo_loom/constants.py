"""Constants for the loom test runner."""

# Environment variables read by loom inside the spawned test binaries.
# These names are a wire contract with loom and must not change.
ENV_MAX_BRANCHES = "LOOM_MAX_BRANCHES"
ENV_MAX_PERMUTATIONS = "LOOM_MAX_PERMUTATIONS"
ENV_MAX_THREADS = "LOOM_MAX_THREADS"
ENV_MAX_DURATION = "LOOM_MAX_DURATION"
ENV_CHECKPOINT_INTERVAL = "LOOM_CHECKPOINT_INTERVAL"
ENV_CHECKPOINT_FILE = "LOOM_CHECKPOINT_FILE"
ENV_LOOM_LOG = "LOOM_LOG"
ENV_LOOM_LOCATION = "LOOM_LOCATION"

# Environment variables read by the runner itself
ENV_MANIFEST_PATH = "CARGO_MANIFEST_PATH"
ENV_TERM_COLOR = "CARGO_TERM_COLOR"
ENV_RUNNER_LOG = "CARGO_LOG"

DEFAULT_MAX_BRANCHES = 1_000
DEFAULT_MAX_THREADS = 4
DEFAULT_CHECKPOINT_INTERVAL = 5
DEFAULT_LOOM_LOG = "trace"

# loom refuses to model more than 4 threads
MAX_THREADS_LIMIT = 4

LOOM_RUSTFLAGS = "--cfg loom --cfg debug_assertions"

# Arguments that make a libtest binary emit one JSON event per line
LIBTEST_JSON_ARGS = ["-Z", "unstable-options", "--format", "json"]

CHECKPOINT_SUFFIX = ".json"

# Layouts for checkpoint files under the checkpoint root
LAYOUT_BINARY = "binary"  # <root>/<binary-file-name>/<test>.json
LAYOUT_SUITE = "suite"    # <root>/<suite>-<test>.json
CHECKPOINT_LAYOUTS = [LAYOUT_BINARY, LAYOUT_SUITE]

DEFAULT_SETTINGS_FILE = "cargo-loom.yaml"

# Variables the runner sets itself; inherited values are never passed on
MANAGED_ENV = [
    ENV_MAX_BRANCHES,
    ENV_MAX_PERMUTATIONS,
    ENV_MAX_THREADS,
    ENV_MAX_DURATION,
    ENV_CHECKPOINT_INTERVAL,
    ENV_CHECKPOINT_FILE,
    ENV_LOOM_LOG,
    ENV_LOOM_LOCATION,
]

# Target kinds whose test binary holds a crate's own unit tests
LIB_KINDS = ["lib", "rlib", "dylib", "cdylib", "staticlib", "proc-macro"]

# Target kinds keyed by their bare name; other kinds get `<name>.<kind>`
BARE_NAME_KINDS = LIB_KINDS + ["test"]
