"""Rolling merged updates out to hosts and tidying the history afterwards."""

from containers_up.deploy.pull_restart import PullRestartExecutor, folder_from_title
from containers_up.deploy.squash import CommitSquasher, SquashScheduler

__all__ = [
    "CommitSquasher",
    "PullRestartExecutor",
    "SquashScheduler",
    "folder_from_title",
]
