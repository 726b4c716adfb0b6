import argparse
import contextlib
import functools
import os
import pathlib
import shutil
import subprocess
import sys

from packaging.version import InvalidVersion, Version
from rich.console import Console
from rich.markup import escape

__version__ = "0.1"

class Output:
    """Gentoo style terminal output (`` * `` prefixed status lines)."""

    def __init__ (self):
        self.quiet = False
        self.stdout = Console(highlight=False, soft_wrap=True, emoji=False)
        self.stderr = Console(
            highlight=False,
            soft_wrap=True,
            emoji=False,
            stderr=True
        )

    def print (self, s):
        if not self.quiet:
            self.stdout.print(s)

    def einfo (self, s):
        self.print(f" [bold green]*[/] {s}")

    def ewarn (self, s):
        self.print(f" [bold yellow]*[/] {s}")

    def eerror (self, s):
        self.stderr.print(f" [bold red]*[/] {escape(s)}")

    @staticmethod
    def color (color, s):
        return f"[{color}]{escape(str(s))}[/]"

    def green (self, s):
        return self.color("green", s)

    def red (self, s):
        return self.color("red", s)

    def teal (self, s):
        return self.color("cyan", s)

out = Output()

class Error (RuntimeError):
    """Base class of all errors raised while updating the kernel."""

class LaunchError (Error):
    """An external tool could not be started."""

class CommandFailed (Error):
    """An external tool exited with a non-zero status."""

    def __init__ (self, argv, returncode, stderr=""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        msg = f"error: {self.argv[0]} failed with exit status {returncode}"
        if stderr:
            msg += f"\n{stderr.strip()}"
        super().__init__(msg)

class DecodeError (Error):
    """Captured output is not valid text."""

class ParallelismUnavailable (Error):
    """The host could not report its number of processors."""

class ModuleNotFound (Error):
    """The NVIDIA module is missing from the DKMS status."""

class ParseError (Error):
    """The DKMS status line could not be parsed."""

class Kernel:

    # kernel source mirror
    mirror = "https://cdn.kernel.org/pub/linux/kernel/v6.x"

    # module directory (also holds the kernel sources and config)
    modules = pathlib.Path("/lib/modules")

    # custom kernel config
    config = modules / "config-ClaudioFSR"

    # boot image
    vmlinuz = pathlib.Path("/boot/vmlinuz-6.12")

    # local version suffix
    suffix = "ClaudioFSR"

    # mkinitcpio preset
    preset = "linux612_ClaudioFSR"

    # boot image relative to the source directory
    bzImage = pathlib.Path("arch/x86/boot/bzImage")

    def __init__ (self, version: str):
        """Construct a Kernel for a given version string."""
        self.version = version
        self.name = f"linux-{version}"
        self.tarball = f"{self.name}.tar.xz"
        self.url = f"{self.mirror}/{self.tarball}"
        self.src = self.modules / self.name
        self.release = f"{version}-{self.suffix}"

class DKMS:

    # dkms tree
    tree = pathlib.Path("/var/lib/dkms")

    # module name
    module = "nvidia"

    # build architecture
    arch = "x86_64"

    def __init__ (self, kernel: Kernel, version: str):
        """Construct the DKMS artifacts of a kernel and driver version."""
        self.kernel = kernel
        self.version = version
        self.name = f"{self.module}/{version}"
        root = self.tree / self.module
        self.file = root / f"kernel-{kernel.release}-{self.arch}"
        self.dir = root / version / kernel.release

def cli (f):
    """A top level exception handling decorator for script main functions."""
    @functools.wraps(f)
    def handler (argv=sys.argv[1:]):
        try:
            r = f(argv)
            return 0 if r is None else r
        except Exception as e:
            out.eerror(str(e))
            sys.exit(1)
    return handler

@contextlib.contextmanager
def chdir (path, back=None):
    """Change into a directory and always return to ``back`` (or the cwd)."""
    back = pathlib.Path.cwd() if back is None else back
    os.chdir(path)
    try:
        yield pathlib.Path(path)
    finally:
        os.chdir(back)

def run (argv: list[str]):
    """Run a command with inherited streams and check its exit status."""
    try:
        subprocess.run(argv, check=True)
    except subprocess.CalledProcessError as e:
        raise CommandFailed(argv, e.returncode) from e
    except OSError as e:
        raise LaunchError(f"error: failed to run {argv[0]}: {e}") from e

def output (argv: list[str]) -> str:
    """Run a command, capture it's output and check it's exit status."""
    try:
        proc = subprocess.run(argv, capture_output=True, check=True)
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or b"").decode(errors="replace")
        raise CommandFailed(argv, e.returncode, stderr) from e
    except OSError as e:
        raise LaunchError(f"error: failed to run {argv[0]}: {e}") from e
    try:
        return proc.stdout.decode()
    except UnicodeDecodeError as e:
        raise DecodeError(f"error: invalid output of {argv[0]}: {e}") from e

def cpus () -> int:
    """Get the number of available processors."""
    if hasattr(os, "sched_getaffinity"):
        n = len(os.sched_getaffinity(0))
    else:
        n = os.cpu_count()
    if not n:
        raise ParallelismUnavailable("error: unable to count processors")
    return n

def cores (reserved: int) -> str:
    """
    Get the number of parallel build jobs.

    Args:
        reserved (int): number of processors to hold back

    Returns:
        str: available processors minus ``reserved`` or all of them if that
        would leave none
    """
    if reserved < 0:
        raise ValueError(f"error: negative number of reserved cores {reserved}")
    n = cpus()
    return str(n - reserved if n > reserved else n)

def driver (status: str) -> str:
    """
    Extract the NVIDIA driver version from ``dkms status``.

    The first line starting with ``nvidia`` is split at ``/`` and ``,``,
    where the second field is the version::

      nvidia/550.135, 6.12.4-ClaudioFSR, x86_64: installed
    """
    for l in status.splitlines():
        if l.strip().startswith(DKMS.module):
            break
    else:
        raise ModuleNotFound("error: NVIDIA DKMS module not found")
    fields = l.replace(",", "/").split("/")
    if len(fields) < 2:
        raise ParseError(f"error: unable to extract DKMS version from:\n{l}")
    return fields[1].strip()

def remove (path: pathlib.Path) -> bool:
    """Remove a file or directory tree, returning False if it is missing."""
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except FileNotFoundError:
        out.ewarn(f"not found {out.teal(path)}")
        return False
    out.print(f"   {out.red('✗')} {out.teal(path)}")
    return True

def kernel_compile (new: str):
    """
    Download, build and install a kernel.
    =====================================

    This step is a mere wrapper to::

      wget ${mirror}/linux-${new}.tar.xz
      tar -Jxvf linux-${new}.tar.xz
      mkdir -p /lib/modules/linux-${new}
      cd /lib/modules/linux-${new}
      cp /lib/modules/config-ClaudioFSR .config
      make -j ${cores} && make modules_install
      cp -fv arch/x86/boot/bzImage /boot/vmlinuz-6.12
      cd /lib/modules
    """
    kernel = Kernel(new)
    jobs = cores(1)

    out.einfo(f"compiling {out.teal(kernel.name)} with {jobs} cores")

    # fetch sources
    out.einfo(f"downloading {out.teal(kernel.url)}")
    run(["wget", kernel.url])
    out.einfo(f"extracting {out.teal(kernel.tarball)}")
    run(["tar", "-Jxvf", kernel.tarball])

    kernel.src.mkdir(parents=True, exist_ok=True)

    with chdir(kernel.src, back=Kernel.modules):
        out.einfo(f"copying {out.teal(Kernel.config)}")
        run(["cp", str(Kernel.config), ".config"])

        # build
        out.einfo(f"building {out.teal(kernel.src)}")
        run(["make", "-j", jobs])
        out.einfo("installing modules")
        run(["make", "modules_install"])

        # install boot image
        out.einfo(f"creating boot image {out.teal(Kernel.vmlinuz)}")
        run(["/usr/bin/cp", "-fv", str(Kernel.bzImage), str(Kernel.vmlinuz)])

def dkms_install (old: str, new: str):
    """
    Rebuild the NVIDIA module for the new kernel.
    =============================================

    Installs the driver version reported by ``dkms status`` for the new
    kernel and deletes the old kernel's leftovers in the dkms tree. Missing
    leftovers are reported, not raised.

    This step is a mere wrapper to::

      dkms install --force --no-depmod nvidia/${driver} -k ${new}-ClaudioFSR
      rm -f /var/lib/dkms/nvidia/kernel-${old}-ClaudioFSR-x86_64
      rm -rf /var/lib/dkms/nvidia/${driver}/${old}-ClaudioFSR
    """
    out.einfo(f"running {out.teal('dkms status')}")
    status = output(["dkms", "status"])
    for l in status.splitlines():
        out.print(f"   {escape(l)}")
    version = driver(status)
    out.einfo(f"found {out.teal(DKMS.module)} version {out.teal(version)}")

    kernel = Kernel(new)
    dkms = DKMS(kernel, version)
    dargs = [
        "dkms",
        "install",
        "--force",
        "--no-depmod",
        dkms.name,
        "-k", kernel.release
    ]
    out.einfo(f"running {out.teal(' '.join(dargs))}")
    run(dargs)

    stale = DKMS(Kernel(old), version)
    out.einfo(f"deleting dkms leftovers of {out.teal(stale.kernel.release)}:")
    remove(stale.file)
    remove(stale.dir)

def mkinitcpio ():
    """Rebuild the initramfs."""
    margs = ["mkinitcpio", "-p", Kernel.preset]
    out.einfo(f"running {out.teal(' '.join(margs))}")
    run(margs)

def update_grub ():
    """Regenerate the bootloader config."""
    out.einfo(f"running {out.teal('update-grub')}")
    run(["update-grub"])

def banner (old: str, new: str) -> str:
    """Describe the version change as either upgrade or update."""
    try:
        kind = "upgrade" \
            if Version(old).release[:2] != Version(new).release[:2] \
            else "update"
    except InvalidVersion:
        kind = "update"
    return f"kernel {kind}: {old} → {new}"

@cli
def main (argv):
    """
    Custom Manjaro kernel updater.
    ==============================

    Compile and install a new kernel, rebuild the NVIDIA DKMS module for it,
    regenerate the initramfs and update GRUB.

    Command Line Arguments
    ----------------------

    ``-o <old>``
      currently installed kernel version

    ``-n <new>``
      kernel version to install

    ``-q``
      be quiet

    Commands
    --------

    ``kernel-compile``
      only download, build and install the new kernel

    ``dkms-install``
      only rebuild the NVIDIA module for the new kernel

    Without a command, both are run in order. In any case, the initramfs and
    bootloader config are regenerated afterwards.
    """
    parser = argparse.ArgumentParser(
        prog="kupdate",
        description="Custom Manjaro kernel updater.",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "-o", "--old",
        metavar="<old>",
        dest="old",
        required=True,
        help="currently installed kernel version"
    )
    parser.add_argument(
        "-n", "--new",
        metavar="<new>",
        dest="new",
        required=True,
        help="kernel version to install"
    )
    parser.add_argument(
        "-q",
        dest="quiet",
        action="store_true",
        help="be quiet"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    commands = parser.add_subparsers(
        dest="command",
        metavar="<command>",
        title="commands"
    )
    commands.add_parser(
        "kernel-compile",
        help="only download, build and install the new kernel"
    )
    commands.add_parser(
        "dkms-install",
        help="only rebuild the NVIDIA module for the new kernel"
    )
    args = parser.parse_args(argv)
    out.quiet = args.quiet

    out.einfo(escape(banner(args.old, args.new)))

    if args.command in (None, "kernel-compile"):
        kernel_compile(args.new)
    if args.command in (None, "dkms-install"):
        dkms_install(args.old, args.new)

    mkinitcpio()
    update_grub()

    out.einfo(out.green("all done"))
