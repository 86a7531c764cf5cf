# subsplitctl/executor.py
import subprocess


def execute_command(command: str) -> int:
    """
    Executes a shell command and returns its exit code.

    Output (stdout and stderr merged) is echoed line by line as the
    command produces it; bytes that are not UTF-8 are replaced.
    There is no timeout.
    Returns 0 for success, non-zero for failure.
    """
    try:
        # shell=True: the command is a chain relying on && and $?
        process = subprocess.Popen(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding='utf-8',
            errors='replace',
            bufsize=1,
        )
    except OSError as e:
        print(f"Error executing command '{command}': {e}")
        return -1 # Indicate failure

    with process:
        for line in process.stdout:
            print(line, end='', flush=True)

    return process.returncode
