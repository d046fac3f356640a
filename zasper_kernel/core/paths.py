import os
import stat
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import platformdirs

pjoin = os.path.join

APPNAME = "zasper"


def envset(name: str, default: bool = False) -> bool:
    """Return the boolean value of a given environment variable.

    Anything other than 'no', 'n', 'false', 'off', '0' or '0.0' counts as set.
    """
    if name not in os.environ:
        return default
    return os.environ[name].lower() not in ["no", "n", "false", "off", "0", "0.0"]


def jupyter_data_dir() -> str:
    """Directory for non-transient Jupyter data files of this user.

    Returns JUPYTER_DATA_DIR if defined, else a platform-appropriate path.
    """
    env = os.environ
    if env.get("JUPYTER_DATA_DIR"):
        return env["JUPYTER_DATA_DIR"]

    if envset("JUPYTER_PLATFORM_DIRS"):
        return platformdirs.user_data_dir(APPNAME, appauthor=False)

    home = str(Path("~").expanduser().resolve())
    if sys.platform == "darwin":
        return str(Path(home, "Library", "Jupyter"))
    if sys.platform == "win32":
        appdata = env.get("APPDATA")
        if appdata:
            return str(Path(appdata, "jupyter").resolve())
        return pjoin(home, ".jupyter", "data")
    # Linux, non-OS X Unix, AIX, etc.
    xdg = env.get("XDG_DATA_HOME") or pjoin(home, ".local", "share")
    return pjoin(xdg, "jupyter")


def jupyter_runtime_dir() -> str:
    """Directory for transient files such as kernel connection files.

    Returns JUPYTER_RUNTIME_DIR if defined, otherwise (data_dir)/runtime.
    """
    if os.environ.get("JUPYTER_RUNTIME_DIR"):
        return os.environ["JUPYTER_RUNTIME_DIR"]
    return pjoin(jupyter_data_dir(), "runtime")


def get_file_mode(fname: str) -> int:
    # tolerate the owner execute bit (CIFS) and the sticky bit
    return stat.S_IMODE(Path(fname).stat().st_mode) & 0o6677


@contextmanager
def secure_write(fname: str, binary: bool = False) -> Iterator[Any]:
    """Open `fname` for writing with mode 0600 and yield the file handle.

    Connection files hold the signing key, so nobody but the owner may read them.
    """
    mode = "wb" if binary else "w"
    encoding = None if binary else "utf-8"
    try:
        Path(fname).unlink()
    except OSError:
        # the file did not exist yet
        pass

    fd = os.open(fname, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o0600)
    with os.fdopen(fd, mode, encoding=encoding) as f:
        if os.name != "nt":
            file_mode = get_file_mode(fname)
            if file_mode != 0o0600:
                msg = (
                    f"Permissions assignment failed for secure file: '{fname}'."
                    f" Got '{oct(file_mode)}' instead of '0o0600'."
                )
                raise RuntimeError(msg)
        yield f
