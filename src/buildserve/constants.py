"""Global constants for buildserve."""

# Workspace layout defaults

WORKSPACE_FILE_NAME = "workspace.json"
DEFAULT_SERVE_TARGET = "serve"
DEFAULT_BUILD_TARGET = "build"
DEFAULT_OUTPUT_FILE_NAME = "main.js"

# Linked dependency snapshot lives inside the served project's build output
LINKED_DEPENDENCIES_DIR_NAME = "node_modules"

# Server process defaults
DEFAULT_RUNTIME = ("node",)
DEFAULT_KILL_TIMEOUT = 5.0
INSPECT_FLAG = "--inspect"

# Module resolution compatibility flag for partially bundled ESM output
NODE_OPTIONS_ENV = "NODE_OPTIONS"
NODE_RESOLUTION_FLAG = "--experimental-specifier-resolution=node"

# Import keys of this form are treated as external (not workspace) packages
EXTERNAL_DEPENDENCY_PREFIX = "npm:"
