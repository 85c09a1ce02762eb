import logging
from typing import Optional

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.core.tools import parse_resource_id
from azure.mgmt.network import NetworkManagementClient

from .azure_helpers import get_azure_credential
from .errors import ControlPlaneError


class AzureControlPlane:
    """The few VM operations the administrator flows need."""

    def __init__(self, subscription_id: str, resource_group: str, credential=None,
                 compute: Optional[ComputeManagementClient] = None,
                 network: Optional[NetworkManagementClient] = None):
        self.resource_group = resource_group
        if compute is None or network is None:
            credential = credential or get_azure_credential()
            logging.info(f"[AZURE] Initializing clients for subscription={subscription_id}")
        self.compute = compute or ComputeManagementClient(credential, subscription_id)
        self.network = network or NetworkManagementClient(credential, subscription_id)

    def get_instance_state(self, name: str) -> str:
        try:
            view = self.compute.virtual_machines.instance_view(self.resource_group, name)
        except ResourceNotFoundError as e:
            raise ControlPlaneError(f"VM {name} not found in resource group {self.resource_group}") from e
        except AzureError as e:
            raise ControlPlaneError(f"failed to read state of VM {name}: {e}") from e

        codes = [s.code for s in (view.statuses or []) if s.code]
        for code in codes:
            if code.startswith("PowerState/"):
                return code.split("/", 1)[1]
        # e.g. ProvisioningState/failed/AllocationFailed
        if any(code.lower().startswith("provisioningstate/failed") for code in codes):
            return "failed"
        return "unknown"

    def start_instance(self, name: str):
        logging.info(f"[AZURE] Starting VM {name} in {self.resource_group}")
        try:
            # The returned poller is not awaited; callers observe the state
            self.compute.virtual_machines.begin_start(self.resource_group, name)
        except AzureError as e:
            raise ControlPlaneError(f"failed to start VM {name}: {e}") from e

    def get_public_ip(self, name: str) -> Optional[str]:
        try:
            vm = self.compute.virtual_machines.get(self.resource_group, name)
            profile = vm.network_profile
            for nic_ref in (profile and profile.network_interfaces) or []:
                nic_id = parse_resource_id(nic_ref.id)
                nic = self.network.network_interfaces.get(nic_id["resource_group"], nic_id["name"])
                for ip_config in nic.ip_configurations or []:
                    if ip_config.public_ip_address is None:
                        continue
                    pip_id = parse_resource_id(ip_config.public_ip_address.id)
                    pip = self.network.public_ip_addresses.get(pip_id["resource_group"], pip_id["name"])
                    if pip.ip_address:
                        return pip.ip_address
        except AzureError as e:
            raise ControlPlaneError(f"failed to look up public IP of VM {name}: {e}") from e
        return None
