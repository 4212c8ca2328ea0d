"""Shell scripts for the worker Pod, rendered from Jinja2 templates.

Every function here is pure: typed inputs in, script text out.  Decisions
(which host keys to trust, which credential mode is active, how the agent
is launched) are made by the builder and passed in, so the templates only
carry flat conditionals on booleans and values.

All interpolated values go through the ``quote`` filter (``shlex.quote``).
"""

from __future__ import annotations

import shlex

import jinja2

# Paths shared by the templates and the builder.
WORKSPACE_PATH = "/workspace"
REPO_PATH = f"{WORKSPACE_PATH}/repo"
GIT_CREDS_PATH = "/git-creds"
CLAUDE_CREDS_PATH = "/claude-creds"
HOME_PATH = "/home/nonroot"
METRICS_PATH = "/metrics"
TERMINATION_LOG = "/dev/termination-log"
METRICS_PORT = 8080

# Secret keys probed for the SSH private key, in order.
SSH_KEY_NAMES = ("ssh-privatekey", "id_rsa")

_env = jinja2.Environment(  # noqa: S701
    autoescape=False,
    undefined=jinja2.StrictUndefined,
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
)
_env.filters["quote"] = lambda value: shlex.quote(str(value))


# ---------------------------------------------------------------------------
# Init phase
# ---------------------------------------------------------------------------

_INIT_TEMPLATE = _env.from_string(
    """\
set -e

{% if ssh %}
{% if known_hosts is none %}
echo "ERROR: no trusted host key for {{ host }}." >&2
echo "Add it to GASTOWN_SSH_KNOWN_HOSTS; refusing to connect to an unverified host." >&2
exit 1
{% else %}
# Setup SSH
mkdir -p "$HOME/.ssh"
chmod 700 "$HOME/.ssh"
{% for key in key_names %}
{{ 'if' if loop.first else 'elif' }} [ -f {{ (creds_path ~ '/' ~ key) | quote }} ]; then
    cp {{ (creds_path ~ '/' ~ key) | quote }} "$HOME/.ssh/id_rsa"
{% endfor %}
else
    echo "ERROR: git secret has none of: {{ key_names | join(', ') }}" >&2
    exit 1
fi
chmod 600 "$HOME/.ssh/id_rsa"

# Pre-verified host keys only; never scan
cat > "$HOME/.ssh/known_hosts" << 'KNOWN_HOSTS'
{% for line in known_hosts %}
{{ line }}
{% endfor %}
KNOWN_HOSTS
chmod 644 "$HOME/.ssh/known_hosts"
export GIT_SSH_COMMAND="ssh -i $HOME/.ssh/id_rsa -o StrictHostKeyChecking=yes -o UserKnownHostsFile=$HOME/.ssh/known_hosts"
{% endif %}
{% endif %}

# Clone the repository
echo "Cloning {{ repository }} branch {{ branch }}..."
git clone --depth=1 -b {{ branch | quote }} {{ repository | quote }} {{ repo_path | quote }}

# Create work branch
cd {{ repo_path | quote }}
git checkout -b {{ work_branch | quote }}
{% if ssh %}
git config core.sshCommand "$GIT_SSH_COMMAND"
{% endif %}
echo "Git setup complete. Working branch: {{ work_branch }}"
"""
)


def render_init_script(
    *,
    repository: str,
    branch: str,
    work_branch: str,
    ssh: bool,
    host: str | None = None,
    known_hosts: list[str] | None = None,
) -> str:
    """Clone ``repository`` at depth 1 and create ``work_branch``.

    For SSH repositories ``known_hosts`` must hold the trusted lines for
    ``host``; ``None`` renders a script that fails before any network access.
    """
    return _INIT_TEMPLATE.render(
        repository=repository,
        branch=branch,
        work_branch=work_branch,
        ssh=ssh,
        host=host or "",
        known_hosts=known_hosts,
        key_names=SSH_KEY_NAMES,
        creds_path=GIT_CREDS_PATH,
        repo_path=REPO_PATH,
    )


# ---------------------------------------------------------------------------
# Main phase
# ---------------------------------------------------------------------------

_MAIN_TEMPLATE = _env.from_string(
    """\
set -e

# Report the checkout state on exit so the controller can refuse unsafe cleanup
report_cleanup_status() {
    status=unknown
    if changes=$(git -C {{ repo_path | quote }} status --porcelain 2>/dev/null); then
        if [ -n "$changes" ]; then
            status=has_uncommitted
        else
            if git -C {{ repo_path | quote }} rev-parse --abbrev-ref '@{u}' >/dev/null 2>&1; then
                ahead=$(git -C {{ repo_path | quote }} rev-list --count '@{u}..HEAD' 2>/dev/null || echo 1)
            else
                ahead=$(git -C {{ repo_path | quote }} rev-list --count {{ ('origin/' ~ base_branch) | quote }}..HEAD 2>/dev/null || echo 1)
            fi
            if [ "$ahead" -gt 0 ]; then
                status=has_unpushed
            else
                status=clean
            fi
        fi
    fi
    printf '%s' "$status" > {{ termination_log | quote }} 2>/dev/null || true
    echo "Cleanup status: $status"
}
trap report_cleanup_status EXIT

{% if oauth_bundle %}
# Copy credentials into the writable home so the agent can extend them
mkdir -p "$CLAUDE_CONFIG_DIR"
cp -rL {{ (claude_creds_path ~ '/.') | quote }} "$CLAUDE_CONFIG_DIR/"
chmod -R u+w "$CLAUDE_CONFIG_DIR"
{% endif %}

git config --global user.name {{ git_name | quote }}
git config --global user.email {{ git_email | quote }}
git config --global --add safe.directory {{ repo_path | quote }}

{% if binary.startswith("/") %}
{% set found = "[ -x " ~ (binary | quote) ~ " ]" %}
{% else %}
{% set found = "command -v " ~ (binary | quote) ~ " >/dev/null 2>&1" %}
{% endif %}
{% if install %}
if ! {{ found }}; then
    echo "Installing {{ binary }}..."
    {{ install }}
fi
{% endif %}
if ! {{ found }}; then
    echo "ERROR: agent binary {{ binary }} not found" >&2
    exit 127
fi

echo "Starting {{ agent }} agent..."
echo "Working on issue: $GT_ISSUE"
set +e
{{ launch }}
rc=$?
set -e
echo "Agent exited with code $rc"
exit $rc
"""
)


def render_main_script(
    *,
    agent: str,
    binary: str,
    launch: str,
    install: str | None,
    base_branch: str,
    oauth_bundle: bool,
    git_name: str,
    git_email: str,
) -> str:
    """Prepare home and git identity, ensure the agent binary, then run it.

    ``launch`` is inserted as-is; it is built by the agent strategy from
    quoted parts.
    """
    return _MAIN_TEMPLATE.render(
        agent=agent,
        binary=binary,
        launch=launch,
        install=install,
        base_branch=base_branch,
        oauth_bundle=oauth_bundle,
        git_name=git_name,
        git_email=git_email,
        repo_path=REPO_PATH,
        claude_creds_path=CLAUDE_CREDS_PATH,
        termination_log=TERMINATION_LOG,
    )


# ---------------------------------------------------------------------------
# Telemetry sidecar
# ---------------------------------------------------------------------------

_TELEMETRY_TEMPLATE = _env.from_string(
    """\
set -e

# Create metrics collector script
cat > {{ metrics_path }}/collect.sh << 'SCRIPT'
#!/bin/sh
POLECAT_NAME="${POLECAT_NAME:-unknown}"
POLECAT_RIG="${POLECAT_RIG:-unknown}"
POLECAT_BEAD="${POLECAT_BEAD:-unknown}"
LABELS="polecat=\\"$POLECAT_NAME\\",rig=\\"$POLECAT_RIG\\",bead=\\"$POLECAT_BEAD\\""
START_TIME=$(date +%s)

while true; do
  ELAPSED=$(( $(date +%s) - START_TIME ))
  if [ -n "$AGENT_PROCESS_PATTERN" ] && ps aux | grep -q "$AGENT_PROCESS_PATTERN"; then
    RUNNING=1
  else
    RUNNING=0
  fi
  {
    echo "# HELP polecat_execution_duration_seconds Total execution time of the polecat"
    echo "# TYPE polecat_execution_duration_seconds counter"
    echo "polecat_execution_duration_seconds{$LABELS} $ELAPSED"
    echo "# HELP polecat_agent_running Agent process status (1=running, 0=stopped)"
    echo "# TYPE polecat_agent_running gauge"
    echo "polecat_agent_running{$LABELS} $RUNNING"
  } > {{ metrics_path }}/metrics.tmp
  mv {{ metrics_path }}/metrics.tmp {{ metrics_path }}/metrics.txt
  sleep {{ interval }}
done
SCRIPT

chmod +x {{ metrics_path }}/collect.sh
{{ metrics_path }}/collect.sh &

# Serve the metrics file
while true; do
  {
    echo "HTTP/1.1 200 OK"
    echo "Content-Type: text/plain; version=0.0.4"
    echo "Connection: close"
    echo ""
    cat {{ metrics_path }}/metrics.txt 2>/dev/null || echo "# No metrics available yet"
  } | nc -l -p {{ port }} -q 1
done
"""
)


def render_telemetry_script(*, interval: int = 5, port: int = METRICS_PORT) -> str:
    """Sidecar loop.  The agent process pattern comes from ``AGENT_PROCESS_PATTERN``."""
    return _TELEMETRY_TEMPLATE.render(metrics_path=METRICS_PATH, interval=interval, port=port)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

_PROMPT_TEMPLATE = _env.from_string(
    """\
You are a gastown polecat working on issue {{ bead_id }} in rig {{ rig }}.
{% if description %}

Task description:
{{ description }}
{% endif %}

Work in the current git repository on branch {{ work_branch }}.
Commit your changes with clear messages and push the branch to origin when done.
Do not leave uncommitted or unpushed work behind.
"""
)


def render_prompt(*, bead_id: str, rig: str, work_branch: str, description: str | None = None) -> str:
    return _PROMPT_TEMPLATE.render(bead_id=bead_id, rig=rig, work_branch=work_branch, description=description)
