# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge openssh_keypair module

Generate OpenSSH private/public key pairs with ssh-keygen.
"""

import posixpath
from typing import Any, Dict, Optional

from converge.connections.base import shell_quote
from converge.modules.base import Module, ModuleResult, register_module


KEY_TYPES = ("rsa", "dsa", "ecdsa", "ed25519")

DEFAULT_SIZES = {"rsa": 4096, "dsa": 1024, "ecdsa": 256}


@register_module
class OpensshKeypairModule(Module):
    """
    Ensure an OpenSSH key pair exists at ``path`` and ``path``.pub.

    An existing pair is left alone unless ``force`` is set, in which case
    both halves are replaced.
    """

    name = "openssh_keypair"
    required_args = ["path"]
    optional_args = {
        "type": "rsa",
        "size": None,
        "passphrase": None,
        "comment": None,
        "state": "present",
        "force": False,
        "mode": None,
    }
    supports_check_mode = True

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        if self.get_arg("type") not in KEY_TYPES:
            return f"type must be one of {', '.join(KEY_TYPES)}, got {self.get_arg('type')!r}"
        if self.get_arg("state") not in ("present", "absent"):
            return f"state must be present or absent, got {self.get_arg('state')!r}"
        size = self.get_arg("size")
        if size is not None and not str(size).isdigit():
            return f"size must be an integer, got {size!r}"
        return None

    async def _exists(self, path: str) -> bool:
        result = await self.run_command(f"test -e {shell_quote(path)}")
        return result.rc == 0

    async def run(self) -> ModuleResult:
        path = str(self.args["path"])
        public = f"{path}.pub"
        results: Dict[str, Any] = {"filename": path, "type": self.get_arg("type")}

        private_exists = await self._exists(path)
        public_exists = await self._exists(public)

        if self.get_arg("state") == "absent":
            if not (private_exists or public_exists):
                return ModuleResult(results=results)
            if not self.check_mode:
                await self.check_command(
                    f"rm -f {shell_quote(path)} {shell_quote(public)}",
                    f"removing {path}",
                )
            return ModuleResult(changed=True, msg="key pair removed", results=results)

        if private_exists and public_exists and not self.get_bool("force"):
            results.update(await self._describe(public))
            return ModuleResult(results=results)

        if self.check_mode:
            return ModuleResult(changed=True, msg="key pair would be generated", results=results)

        if private_exists or public_exists:
            await self.check_command(
                f"rm -f {shell_quote(path)} {shell_quote(public)}",
                f"removing old key pair {path}",
            )

        await self.check_command(self.keygen_command(path), f"ssh-keygen for {path}")

        mode = self.get_arg("mode")
        if mode is not None:
            snapshot = await self.read_file(path, read_content=False)
            await self.apply_attributes(path, snapshot, mode=mode)

        results.update(await self._describe(public))
        return ModuleResult(changed=True, msg="key pair generated", results=results)

    def keygen_command(self, path: str) -> str:
        key_type = self.get_arg("type")
        size = self.get_arg("size") or DEFAULT_SIZES.get(key_type)
        passphrase = self.get_arg("passphrase") or ""
        comment = self.get_arg("comment")

        words = ["ssh-keygen", "-q", "-t", key_type]
        if size and key_type != "ed25519":
            words += ["-b", str(size)]
        words += ["-N", str(passphrase)]
        if comment is not None:
            words += ["-C", str(comment)]
        words += ["-f", path]
        return " ".join(shell_quote(w) for w in words)

    async def _describe(self, public: str) -> Dict[str, Any]:
        info: Dict[str, Any] = {}
        key = await self.run_command(f"cat -- {shell_quote(public)}")
        if key.rc == 0:
            info["public_key"] = " ".join(key.stdout.split()[:2])
            parts = key.stdout.split(None, 2)
            info["comment"] = parts[2].strip() if len(parts) > 2 else ""
        fingerprint = await self.run_command(f"ssh-keygen -l -f {shell_quote(public)}")
        words = fingerprint.stdout.split() if fingerprint.rc == 0 else []
        if len(words) >= 2:
            info["fingerprint"] = words[1]
            info["size"] = int(words[0]) if words[0].isdigit() else None
        info["directory"] = posixpath.dirname(public)
        return info
