"""Worker execution Pod synthesis.

- **builder**: ``PodBuilder`` (Worker -> Pod)
- **agents**: per-agent install/launch strategies
- **scripts**: Jinja2-rendered init, main and telemetry scripts
- **known_hosts**: SSH host-key resolution
"""

from gastown.operator.pod.builder import PodBuilder, pod_name_for, work_branch_for

__all__ = ["PodBuilder", "pod_name_for", "work_branch_for"]
