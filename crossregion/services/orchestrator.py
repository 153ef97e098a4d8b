import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional

from crossregion.config.config import (
    AGENT_PYTHON,
    AGENT_SETUP_COMMAND,
    AGENT_START_TIMEOUT,
    FEATURE_SECURITY_GROUPS,
    HOSTS_FILE,
    KEY_DIR,
    LOG_DIR,
    MAX_CONCURRENCY,
    PROBE_PORT,
    REMOTE_DIR,
    REMOTE_HOSTS_FILE,
    REMOTE_LOG_FILE,
    REPORT_FILE,
    RESOURCE_PREFIX,
    SECURITY_GROUP_DESCRIPTION,
)
from crossregion.models.probe_models import ReportMatrix
from crossregion.models.region_models import (
    AmiReference,
    HostsMap,
    KeyPairRecord,
    SecurityGroupRecord,
)
from crossregion.services import instance_service, key_pair_service, security_group_service
from crossregion.services.errors import GatewayError, TransferError
from crossregion.services.region_store import RegionStateStore
from crossregion.services.report_service import aggregate, build_matrix, parse_log, render_table
from crossregion.services.transfer_service import TransferGateway

RegionStep = Callable[[str], Awaitable[None]]

# crossregion/ itself is what gets shipped to the nodes.
AGENT_SOURCE_DIR = str(Path(__file__).resolve().parents[1])
STOP_AGENT_COMMAND = "pkill -f '[c]rossregion.cli agent' || true"


def agent_start_command(region: str) -> str:
    return (
        f"cd {REMOTE_DIR} && nohup {AGENT_PYTHON} -m crossregion.cli agent"
        f" --region {region} --hosts {REMOTE_HOSTS_FILE} --log {REMOTE_LOG_FILE}"
        f" > {REMOTE_DIR}/agent.out 2>&1 < /dev/null &"
    )


def agent_health_command(timeout: int = AGENT_START_TIMEOUT) -> str:
    # Exits non-zero, with the agent's own output, if it never answers.
    return (
        f"for i in $(seq 1 {timeout}); do"
        f" curl -sf http://localhost:{PROBE_PORT}/health > /dev/null && exit 0; sleep 1; done;"
        f" tail -n 20 {REMOTE_DIR}/agent.out; exit 1"
    )


class Orchestrator:
    """
    Drives the build, configure, cleanup and report pipelines.

    A pipeline is an ordered list of stages. A stage runs one step for every
    region, concurrently up to ``max_concurrency``, and settles completely
    before the next stage starts. A GatewayError in one region is logged and
    only that region misses the stage; anything else is re-raised once the
    stage has settled and stops the pipeline at its top-level handler.
    """

    def __init__(
        self,
        regions,
        ec2_clients: dict,
        transfer: Optional[TransferGateway] = None,
        store: Optional[RegionStateStore] = None,
        max_concurrency: int = MAX_CONCURRENCY,
        key_dir: str = KEY_DIR,
        hosts_file: str = HOSTS_FILE,
        log_dir: str = LOG_DIR,
        report_file: Optional[str] = REPORT_FILE,
        agent_source_dir: str = AGENT_SOURCE_DIR,
        output=None,
    ):
        self.regions = list(dict.fromkeys(regions))
        self.ec2_clients = ec2_clients
        self.transfer = transfer or TransferGateway(key_dir=key_dir)
        self.store = store or RegionStateStore(self.regions)
        self.max_concurrency = max_concurrency or len(self.regions) or 1
        self.key_dir = key_dir
        self.hosts_file = Path(hosts_file)
        self.log_dir = Path(log_dir)
        self.report_file = Path(report_file) if report_file else None
        self.agent_source_dir = agent_source_dir
        self.output = output or sys.stdout
        self.hosts_map: HostsMap = {}
        self.phase = "idle"

    # --- Pipelines ---

    async def build(self) -> bool:
        return await self._run_pipeline("build", self._build_stages)

    async def configure(self) -> bool:
        return await self._run_pipeline("configure", self._configure_stages)

    async def cleanup(self) -> bool:
        return await self._run_pipeline("cleanup", self._cleanup_stages)

    async def report(self) -> Optional[ReportMatrix]:
        matrix = None

        async def stages():
            nonlocal matrix
            matrix = await self._report_stages()

        await self._run_pipeline("report", stages)
        return matrix

    async def _run_pipeline(self, phase: str, stages: Callable[[], Awaitable[None]]) -> bool:
        self.phase = phase
        logging.info(f"Starting {phase} for regions {self.regions}")
        try:
            await stages()
        except Exception:
            logging.exception(f"Unexpected failure in {phase}; no state was rolled back")
            return False
        finally:
            self.phase = "idle"
        logging.info(f"Finished {phase}")
        return True

    async def _build_stages(self) -> None:
        # Safety net: start from nothing so a region never ends up with two nodes.
        await self._cleanup_stages()
        await self._for_all_regions("create security group", self.create_security_group)
        await self._for_all_regions("ensure key pair", self.ensure_key_pair)
        await self._for_all_regions("check instance status", self.check_instance_status)
        await self._for_all_regions("find AMI", self.find_ami)
        await self._for_all_regions("create instance", self.create_instance)
        await self._for_all_regions("tag instance", self.tag_instances)

    async def _configure_stages(self) -> None:
        await self._for_all_regions("check instance status", self.check_instance_status)
        await self._for_all_regions("wait for running", self.wait_for_running)
        self.rebuild_hosts_map(write=True)
        await self._for_all_regions("push agent", self.push_agent)
        await self._for_all_regions("start agent", self.start_agent)

    async def _cleanup_stages(self) -> None:
        # Termination is confirmed before keys and groups go away.
        await self._for_all_regions("check instance status", self.check_instance_status)
        await self._for_all_regions("terminate instances", self.terminate_instances)
        await self._for_all_regions("wait for terminated", self.wait_for_terminated)
        await self._for_all_regions("check key pairs", self.check_key_pairs)
        await self._for_all_regions("delete key pair", self.delete_key_pair)
        await self._for_all_regions("delete security group", self.delete_security_group)

    async def _report_stages(self) -> ReportMatrix:
        await self._for_all_regions("check instance status", self.check_instance_status)
        self.rebuild_hosts_map()
        await self._for_all_regions("fetch log", self.fetch_log)
        return self.emit_report()

    async def _for_all_regions(self, operation: str, step: RegionStep) -> None:
        logging.info(f"[{self.phase}] {operation}...")
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(region: str) -> None:
            async with semaphore:
                with self.store.owned_by(region, operation):
                    await step(region)

        results = await asyncio.gather(*(run(region) for region in self.regions), return_exceptions=True)

        unexpected = None
        for region, result in zip(self.regions, results):
            if isinstance(result, GatewayError):
                logging.error(f"[{self.phase}] {operation} failed in {region}: {result}")
            elif isinstance(result, BaseException):
                logging.error(f"[{self.phase}] {operation} raised unexpectedly in {region}: {result!r}")
                unexpected = unexpected or result
        if unexpected is not None:
            raise unexpected

    # --- Instance steps ---

    async def check_instance_status(self, region: str) -> None:
        instances = await instance_service.describe_live_instances(self.ec2_clients[region])
        records = tuple(instance_service.to_instance_record(region, instance) for instance in instances)
        self.store.update(region, instances=records)
        logging.info(f"{region}: {len(records)} live instances")

    async def find_ami(self, region: str) -> None:
        state = self.store.get(region)
        if state.has_live_instance or state.ami is not None:
            return
        image_id = await instance_service.find_ami(self.ec2_clients[region])
        if image_id is None:
            logging.warning(f"{region}: no image matches the pinned AMI filter")
            return
        self.store.update(region, ami=AmiReference(region=region, image_id=image_id))

    async def create_instance(self, region: str) -> None:
        state = self.store.get(region)
        if state.has_live_instance:
            logging.info(f"Skipping creation in {region}, an instance is already live")
            return
        if state.ami is None or state.key_pair is None:
            logging.warning(f"Skipping creation in {region}, missing AMI or key pair")
            return
        client = self.ec2_clients[region]
        group_name = security_group_service.security_group_name(region) if FEATURE_SECURITY_GROUPS else None
        instance = await instance_service.run_instance(client, state.ami.image_id, state.key_pair.key_name, group_name)
        record = instance_service.to_instance_record(region, instance)
        self.store.update(region, created_instances=state.created_instances + (record,))
        logging.info(f"Instance Created: {region} {record.instance_id}")
        await instance_service.wait_for_state(client, "instance_exists", [record.instance_id])

    async def tag_instances(self, region: str) -> None:
        for record in self.store.get(region).created_instances:
            await instance_service.tag_instance(
                self.ec2_clients[region], record.instance_id, f"{RESOURCE_PREFIX}-{region}"
            )

    async def wait_for_running(self, region: str) -> None:
        instance_ids = self.store.get(region).known_instance_ids()
        if not instance_ids:
            logging.warning(f"Skipping wait for {region}, no instances")
            return
        client = self.ec2_clients[region]
        logging.info(f"Waiting for {region} {instance_ids}")
        await instance_service.wait_for_state(client, "instance_running", instance_ids)
        described = await instance_service.describe_instances_with_retry(client, instance_ids)
        records = tuple(
            record
            for record in (instance_service.to_instance_record(region, instance) for instance in described)
            if record.is_live
        )
        self.store.update(region, instances=records)

    async def terminate_instances(self, region: str) -> None:
        instance_ids = self.store.get(region).known_instance_ids()
        if not instance_ids:
            logging.info(f"Nothing to terminate in {region}")
            return
        terminating = await instance_service.terminate_instances(self.ec2_clients[region], instance_ids)
        self.store.update(region, terminating=tuple(terminating), created_instances=(), instances=())
        logging.info(f"Terminated {region}: {len(terminating)}")

    async def wait_for_terminated(self, region: str) -> None:
        instance_ids = list(self.store.get(region).terminating)
        if not instance_ids:
            return
        await instance_service.wait_for_state(self.ec2_clients[region], "instance_terminated", instance_ids)
        self.store.update(region, terminating=())

    # --- Key pair steps ---

    async def ensure_key_pair(self, region: str) -> None:
        client = self.ec2_clients[region]
        key_name = key_pair_service.key_pair_name(region)
        key_path = key_pair_service.key_file_path(region, self.key_dir)
        existing = await key_pair_service.describe_key_pairs(client, key_name)
        if existing and key_path.exists():
            logging.info(f"Key pair '{key_name}' already exists; reusing it.")
            self.store.update(region, key_pair=KeyPairRecord(region=region, key_name=key_name, key_path=str(key_path)))
            return
        if existing:
            # Without the private key the node would be unreachable.
            logging.warning(f"Key pair '{key_name}' has no local key file; recreating it.")
            await key_pair_service.delete_keypair(client, key_name, key_path)
        key_material = await key_pair_service.create_keypair(client, key_name, key_path)
        self.store.update(
            region,
            key_pair=KeyPairRecord(
                region=region, key_name=key_name, key_path=str(key_path), private_key_material=key_material
            ),
        )

    async def check_key_pairs(self, region: str) -> None:
        key_name = key_pair_service.key_pair_name(region)
        existing = await key_pair_service.describe_key_pairs(self.ec2_clients[region], key_name)
        logging.info(f"Key pairs for {region}: {len(existing)}")
        record = None
        if existing:
            key_path = key_pair_service.key_file_path(region, self.key_dir)
            record = KeyPairRecord(region=region, key_name=key_name, key_path=str(key_path))
        self.store.update(region, key_pair=record)

    async def delete_key_pair(self, region: str) -> None:
        key_path = key_pair_service.key_file_path(region, self.key_dir)
        if self.store.get(region).key_pair is None and not key_path.exists():
            return
        await key_pair_service.delete_keypair(
            self.ec2_clients[region], key_pair_service.key_pair_name(region), key_path
        )
        self.store.update(region, key_pair=None)

    # --- Security group steps ---

    async def create_security_group(self, region: str) -> None:
        if not FEATURE_SECURITY_GROUPS:
            return
        client = self.ec2_clients[region]
        group_name = security_group_service.security_group_name(region)
        group_id = await security_group_service.create_security_group(
            client, group_name, SECURITY_GROUP_DESCRIPTION
        )
        await security_group_service.authorize_ingress(
            client, group_id, security_group_service.to_ip_permissions(security_group_service.PROBE_RULES)
        )
        self.store.update(
            region,
            security_group=SecurityGroupRecord(
                region=region, group_id=group_id, group_name=group_name, rules=security_group_service.PROBE_RULES
            ),
        )

    async def delete_security_group(self, region: str) -> None:
        if not FEATURE_SECURITY_GROUPS:
            return
        await security_group_service.delete_security_group(
            self.ec2_clients[region], security_group_service.security_group_name(region)
        )
        self.store.update(region, security_group=None)

    # --- Agent steps ---

    def rebuild_hosts_map(self, write: bool = False) -> HostsMap:
        self.hosts_map = self.store.hosts_map()
        logging.info(f"Hosts map: {self.hosts_map}")
        if write:
            self.hosts_file.parent.mkdir(parents=True, exist_ok=True)
            self.hosts_file.write_text(json.dumps(self.hosts_map, indent=2, sort_keys=True))
        return self.hosts_map

    async def push_agent(self, region: str) -> None:
        host = self.hosts_map.get(region)
        if host is None:
            logging.warning(f"Skipping agent upload for {region}, no running node")
            return
        await self.transfer.upload_directory(region, host, self.agent_source_dir, f"{REMOTE_DIR}/crossregion")
        await self.transfer.upload_file(region, host, str(self.hosts_file), REMOTE_HOSTS_FILE)

    async def start_agent(self, region: str) -> None:
        host = self.hosts_map.get(region)
        if host is None:
            logging.warning(f"Skipping agent start for {region}, no running node")
            return
        await self.transfer.run_remote_command(region, host, AGENT_SETUP_COMMAND)
        await self.transfer.run_remote_command(region, host, STOP_AGENT_COMMAND)
        await self.transfer.run_remote_command(region, host, agent_start_command(region))
        try:
            await self.transfer.run_remote_command(region, host, agent_health_command())
        except TransferError as e:
            raise TransferError("StartAgent", "AgentNotHealthy", f"{host}: agent did not come up: {e}")
        logging.info(f"Probe agent started in {region} on {host}")

    # --- Report steps ---

    async def fetch_log(self, region: str) -> None:
        self.store.update(region, log_file=None)
        host = self.hosts_map.get(region)
        if host is None:
            logging.warning(f"No running node in {region}; its row will be empty")
            return
        local_path = self.log_dir / f"{region}.log"
        await self.transfer.download_file(region, host, REMOTE_LOG_FILE, str(local_path))
        self.store.update(region, log_file=str(local_path))

    def emit_report(self) -> ReportMatrix:
        entries = []
        for region in self.regions:
            log_file = self.store.get(region).log_file
            if log_file:
                entries.extend(parse_log(Path(log_file).read_text(errors="replace")))
        matrix = build_matrix(self.regions, aggregate(entries))
        table = render_table(matrix)
        self.output.write(table)
        if self.report_file is not None:
            self.report_file.parent.mkdir(parents=True, exist_ok=True)
            self.report_file.write_text(table)
        return matrix
