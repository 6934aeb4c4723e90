"""Lab provisioning pipeline for ssh-lab.

One run goes: pre-flight tool check, base image (a barrier shared by every
instance), then for each instance in sequence: render cloud-init, build the
seed ISO, recreate the overlay disk, assemble network devices and launch.
Instances of a multi-VM lab run their pipelines concurrently once the base
image is present.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Tuple, Type

from sshlab.cloudinit import SubstitutionValues, render_document
from sshlab.constants import ISO_TOOLS, LAB_PASSWORD, QEMU_BINARY, QEMU_IMG
from sshlab.disks import create_overlay
from sshlab.exceptions import DependencyMissing, MissingDiskTool, MissingEngine, MissingMediaTool
from sshlab.images import ImageCache, image_filename
from sshlab.models import BaseImage, LabConfig, LabInstance, NetworkTopology, VMProcessHandle
from sshlab.network import TopologyPolicy, assemble_network, build_topology
from sshlab.seed import build_seed
from sshlab.supervisor import VMSupervisor
from sshlab.utils import find_tool, hash_password, log

# Pipeline order matters: the first missing tool decides the error class.
REQUIRED_TOOLS: List[Tuple[Tuple[str, ...], Type[DependencyMissing]]] = [
    (ISO_TOOLS, MissingMediaTool),
    ((QEMU_IMG,), MissingDiskTool),
    ((QEMU_BINARY,), MissingEngine),
]
INSTALL_HINT = "sudo apt install qemu-kvm qemu-utils genisoimage"


def check_dependencies() -> None:
    """Fail before anything in the workspace is touched if a tool is missing."""
    missing: List[str] = []
    error_cls: Optional[Type[DependencyMissing]] = None
    for candidates, cls in REQUIRED_TOOLS:
        if find_tool(candidates) is None:
            missing.append(" or ".join(candidates))
            error_cls = error_cls or cls
        else:
            log("DEBUG", f"[OK] {candidates[0]}")
    if error_cls is not None:
        raise error_cls(f"Missing required tools: {', '.join(missing)}. Install them with: {INSTALL_HINT}")


class LabProvisioner:
    def __init__(
        self,
        cfg: LabConfig,
        supervisor: Optional[VMSupervisor] = None,
        policy: Optional[TopologyPolicy] = None,
    ) -> None:
        self.cfg = cfg
        self.base_image = BaseImage(
            url=cfg.image_url,
            path=cfg.image_dir / image_filename(cfg.image_url),
            sha256=cfg.image_sha256,
        )
        self.cache = ImageCache(self.base_image, retries=cfg.download_retries)
        self.supervisor = supervisor or VMSupervisor(cfg.log_dir, cfg.state_dir, extra_args=cfg.extra_args)
        self.policy = policy or TopologyPolicy()
        self.handles: List[VMProcessHandle] = []
        self._lock = threading.Lock()

    def seed_path(self, instance: LabInstance) -> Path:
        return self.cfg.lab_dir / f"{instance.name}-cidata.iso"

    def overlay_path(self, instance: LabInstance) -> Path:
        return self.cfg.lab_dir / f"{instance.name}-disk.qcow2"

    def substitution_values(
        self, instance: LabInstance, topology: NetworkTopology, password_hash: str
    ) -> SubstitutionValues:
        server_ip = None
        for other in self.cfg.instances:
            if other.role == "server":
                server_ip = other.internal_ip
                break
        assignment = topology.for_instance(instance.name)
        return SubstitutionValues(
            instance_name=instance.name,
            hostname=instance.name,
            ssh_pub_key=self.cfg.ssh_pubkey,
            password_hash=password_hash,
            internal_ip=instance.internal_ip,
            internal_prefix=assignment.prefix_len if assignment else None,
            mac_address=instance.mac_address,
            server_ip=server_ip,
        )

    def provision_instance(
        self, instance: LabInstance, topology: NetworkTopology, password_hash: str
    ) -> VMProcessHandle:
        log("INFO", f"[{instance.name}] Rendering cloud-init ({instance.role})")
        values = self.substitution_values(instance, topology, password_hash)
        document = render_document(instance.role, values, allow_missing_key=self.cfg.allow_missing_key)
        seed = build_seed(document, self.seed_path(instance))
        overlay = create_overlay(self.base_image, self.overlay_path(instance), self.cfg.disk_size)
        assemble_network(instance, topology)
        handle = self.supervisor.launch(instance, overlay, seed)
        with self._lock:
            self.handles.append(handle)
        return handle

    def run(self) -> List[VMProcessHandle]:
        cfg = self.cfg
        if cfg.preflight:
            log("INFO", "Checking dependencies...")
            check_dependencies()
        for inst in cfg.instances:
            self.supervisor.check_available(inst)

        log("INFO", "Step 1: Cloud image")
        self.cache.ensure()

        topology = build_topology(cfg.instances, self.policy)
        if topology.isolated:
            log("INFO", f"Internal segment via multicast {topology.endpoint}")
        password_hash = hash_password(LAB_PASSWORD)

        if not cfg.multi_instance:
            self.provision_instance(cfg.instances[0], topology, password_hash)
            return list(self.handles)

        errors: List[Tuple[str, Exception]] = []
        with ThreadPoolExecutor(max_workers=len(cfg.instances), thread_name_prefix="sshlab") as pool:
            futures = [
                (inst.name, pool.submit(self.provision_instance, inst, topology, password_hash))
                for inst in cfg.instances
            ]
            for name, future in futures:
                try:
                    future.result()
                except Exception as exc:
                    log("ERROR", f"[{name}] {exc}")
                    errors.append((name, exc))
        if errors:
            self._handle_failure()
            raise errors[0][1]
        return list(self.handles)

    def _handle_failure(self) -> None:
        if not self.handles:
            return
        if self.cfg.on_failure == "stop":
            for handle in self.handles:
                self.supervisor.stop(handle)
            return
        names = ", ".join(handle.instance_name for handle in self.handles)
        log("WARN", f"Leaving already launched instances running: {names} (QLAB_ON_FAILURE=stop to stop them)")
