# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge get_url module

Download a file on the host with curl. The download goes to a temporary
file; ``dest`` is only replaced when its SHA-256 differs.
"""

from typing import Optional, Tuple

from converge.connections.base import shell_quote
from converge.engine.errors import ModuleError
from converge.modules.base import Module, ModuleResult, register_module


@register_module
class GetUrlModule(Module):
    """Download files from HTTP, HTTPS or FTP to the host."""

    name = "get_url"
    required_args = ["url", "dest"]
    optional_args = {
        "mode": None,
        "owner": None,
        "group": None,
        "force": False,
        "checksum": None,
        "timeout": 10,
        "validate_certs": True,
    }
    supports_check_mode = True

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        checksum = self.get_arg("checksum")
        if checksum:
            try:
                self.expected_checksum()
            except ValueError as e:
                return str(e)
        return None

    def expected_checksum(self) -> Optional[Tuple[str, str]]:
        """Parse ``algorithm:hexdigest``; only sha256 is verified."""
        checksum = self.get_arg("checksum")
        if not checksum:
            return None
        algorithm, _, digest = str(checksum).partition(":")
        if not digest:
            raise ValueError(f"checksum must be of the form algorithm:digest, got {checksum!r}")
        if algorithm.lower() != "sha256":
            raise ValueError(f"unsupported checksum algorithm {algorithm!r}, only sha256 is supported")
        return algorithm.lower(), digest.strip().lower()

    async def run(self) -> ModuleResult:
        url = str(self.args["url"])
        dest = str(self.args["dest"])
        expected = self.expected_checksum()
        results = {"url": url, "dest": dest}

        target = await self.read_file(dest, read_content=False)
        if target.is_dir:
            return ModuleResult(failed=True, msg=f"Destination {dest} is a directory", results=results)

        current = await self.file_checksum(dest) if target.exists else None

        fetch = not target.exists or self.get_bool("force")
        if expected is not None and current == expected[1]:
            fetch = False

        if not fetch:
            results["checksum_dest"] = current
            return await self._finish(dest, target, results, changed=False)

        if self.check_mode:
            return ModuleResult(changed=True, msg=f"would download {url}", results=results)

        made = await self.run_command("mktemp")
        if made.rc != 0 or not made.stdout.strip():
            raise ModuleError(self.name, "could not create a temporary file", rc=made.rc, stderr=made.stderr)
        tmp = made.stdout.strip()

        try:
            await self._download(url, tmp)
            downloaded = await self.file_checksum(tmp)
            results["checksum_src"] = downloaded

            if expected is not None and downloaded != expected[1]:
                return ModuleResult(
                    failed=True,
                    msg=f"The checksum for {dest} did not match {expected[1]}; it was {downloaded}.",
                    results=results,
                )

            if downloaded == current:
                results["checksum_dest"] = current
                return await self._finish(dest, target, results, changed=False)

            await self.check_command(f"cat {shell_quote(tmp)} > {shell_quote(dest)}", f"writing {dest}")
        finally:
            await self.run_command(f"rm -f {shell_quote(tmp)}")

        results["checksum_dest"] = downloaded
        target = await self.read_file(dest, read_content=False)
        return await self._finish(dest, target, results, changed=True, msg=f"{url} downloaded to {dest}")

    async def _download(self, url: str, tmp: str) -> None:
        insecure = "" if self.get_bool("validate_certs", True) else "-k "
        timeout = int(self.get_arg("timeout") or 10)
        result = await self.run_command(
            f"curl -fsSL {insecure}--max-time {timeout} -o {shell_quote(tmp)} {shell_quote(url)}"
        )
        if result.rc != 0:
            raise ModuleError(
                self.name,
                f"Request failed for {url}",
                rc=result.rc,
                stderr=result.stderr.strip(),
            )

    async def _finish(self, dest, target, results, changed: bool, msg: str = "") -> ModuleResult:
        attributes = await self.apply_attributes(
            dest,
            target,
            mode=self.get_arg("mode"),
            owner=self.get_arg("owner"),
            group=self.get_arg("group"),
        )
        return ModuleResult(changed=changed or bool(attributes), msg=msg, results=results)
