# subsplitctl/commands.py
import shlex

from .models import BRANCH_UPDATE, ProjectDefinition, PublishMode

SUBSPLIT = ['git', 'subsplit']


class CommandBuildError(ValueError):
    """Raised when no publish command can be built for a publish mode."""


def publish_arguments(project: ProjectDefinition, mode: PublishMode) -> list:
    """
    Argument vector for the publish step.
    Branch updates never push tags; tag releases must.
    """
    if mode.is_rejected:
        raise CommandBuildError(f"Cannot publish project '{project.name}' for a rejected reference.")

    args = SUBSPLIT + ['publish']
    if mode.kind == BRANCH_UPDATE:
        args.append('--no-tags')
    args.append(f'--heads={mode.branch}')
    args.append(' '.join(project.splits))
    return args


def build_command(project: ProjectDefinition, mode: PublishMode, repository_url: str, working_directory: str) -> str:
    """
    Builds the shell chain that publishes one project from working_directory.

    Each step is an argument vector rendered with shlex, so every URL,
    branch name and split spec is quoted on its own. The working directory
    is removed whatever the outcome and the chain exits with the status of
    the publish steps.
    """
    publish = publish_arguments(project, mode)

    steps = [
        shlex.join(['cd', working_directory]),
        f"( {shlex.join(SUBSPLIT + ['init', repository_url])} || true )",
        shlex.join(SUBSPLIT + ['update']),
        shlex.join(publish),
    ]
    cleanup = [
        'cd ..',
        shlex.join(['rm', '-rf', working_directory]),
    ]

    return ' && '.join(steps) + '; status=$?; ' + '; '.join(cleanup) + '; exit $status'
