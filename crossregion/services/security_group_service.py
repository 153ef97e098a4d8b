import logging
from typing import List, Optional

from botocore.exceptions import ClientError, NoCredentialsError

from crossregion.config.config import PROBE_PORT, RESOURCE_PREFIX
from crossregion.models.region_models import SecurityGroupRule
from crossregion.services.errors import GatewayError, error_code, is_not_found

# Management shell, probe HTTP and ICMP echo, open to every peer.
PROBE_RULES = (
    SecurityGroupRule(ip_protocol="tcp", from_port=22, to_port=22, ip_ranges=["0.0.0.0/0"]),
    SecurityGroupRule(ip_protocol="tcp", from_port=PROBE_PORT, to_port=PROBE_PORT, ip_ranges=["0.0.0.0/0"]),
    SecurityGroupRule(ip_protocol="icmp", from_port=-1, to_port=-1, ip_ranges=["0.0.0.0/0"]),
)


def security_group_name(region: str) -> str:
    return f"{RESOURCE_PREFIX}-security-group-{region}"


def to_ip_permissions(rules) -> List[dict]:
    """Converts SecurityGroupRule models to the EC2 IpPermissions format."""
    ip_permissions = []
    for rule in rules:
        ip_ranges = [{"CidrIp": ip} for ip in rule.ip_ranges] if rule.ip_ranges else []
        ip_permissions.append({
            "IpProtocol": rule.ip_protocol,
            "FromPort": rule.from_port,
            "ToPort": rule.to_port,
            "IpRanges": ip_ranges,
        })
    return ip_permissions


def rule_exists(desired_rule: dict, existing_rules: List[dict]) -> bool:
    """
    Checks if a desired security group rule exists within a list of existing rules.
    Args:
        desired_rule (dict): The rule to look for, in IpPermissions format
            ("IpProtocol", "FromPort", "ToPort", "IpRanges").
        existing_rules (List[dict]): Rules already attached to the group, same format.
    Returns:
        bool: True if an existing rule matches protocol, ports and ranges.
    """
    for existing in existing_rules:
        if (desired_rule.get("IpProtocol") == existing.get("IpProtocol") and
            desired_rule.get("FromPort") == existing.get("FromPort") and
            desired_rule.get("ToPort") == existing.get("ToPort") and
            desired_rule.get("IpRanges") == existing.get("IpRanges")):
            return True
    return False


async def find_security_group(ec2_client, group_name: str) -> Optional[dict]:
    """Returns the provider description of the named group, or None."""
    try:
        response = await ec2_client.describe_security_groups(
            Filters=[{"Name": "group-name", "Values": [group_name]}]
        )
    except NoCredentialsError:
        logging.exception("Error: AWS credentials not found or are invalid.")
        raise GatewayError("DescribeSecurityGroups", "NoCredentials", "AWS credentials error")
    except ClientError as e:
        if is_not_found(e):
            return None
        raise GatewayError.from_client_error("DescribeSecurityGroups", e)
    return next(
        (sg for sg in response.get("SecurityGroups", []) if sg.get("GroupName") == group_name),
        None,
    )


async def create_security_group(ec2_client, group_name: str, group_description: str) -> str:
    """
    Asynchronously creates or retrieves an AWS EC2 Security Group.
    If a group with the given name already exists its Group ID is reused,
    otherwise a new group is created.
    Args:
        ec2_client: An asynchronous AWS EC2 client instance.
        group_name (str): The name of the Security Group to create or retrieve.
        group_description (str): A description for the Security Group (used only if creating a new one).
    Returns:
        str: The Group ID of the created or retrieved Security Group.
    Raises:
        GatewayError: If AWS credentials are missing or a client error occurs.
    """
    existing = await find_security_group(ec2_client, group_name)
    if existing is not None:
        logging.info(f"Security Group '{group_name}' already exists; reusing it.")
        return existing["GroupId"]

    try:
        response = await ec2_client.create_security_group(
            GroupName=group_name,
            Description=group_description
        )
    except NoCredentialsError:
        logging.exception("Error: AWS credentials not found or are invalid.")
        raise GatewayError("CreateSecurityGroup", "NoCredentials", "AWS credentials error")
    except ClientError as e:
        raise GatewayError.from_client_error("CreateSecurityGroup", e)
    logging.info(f"Created Security Group '{group_name}' ({response['GroupId']})")
    return response["GroupId"]


async def authorize_ingress(ec2_client, group_id: str, ip_permissions: List[dict]) -> List[dict]:
    """
    Authorize ingress rules for a specified security group in AWS EC2.
    Only the rules from `ip_permissions` that are not attached yet are sent
    to the provider, so repeated calls are no-ops.
    Args:
        ec2_client: An asynchronous AWS EC2 client instance.
        group_id (str): The ID of the security group to modify.
        ip_permissions (List[dict]): Desired ingress rules in IpPermissions format.
    Returns:
        List[dict]: The rules that had to be added (empty when already converged).
    Raises:
        GatewayError: If the group does not exist or the provider call fails.
    """
    try:
        response = await ec2_client.describe_security_groups(GroupIds=[group_id])
        sg = next(iter(response.get("SecurityGroups", [])), None)
        if sg is None:
            raise GatewayError("AuthorizeSecurityGroupIngress", "InvalidGroup.NotFound",
                               f"Security group {group_id} not found.")

        existing_rules = sg.get("IpPermissions", [])
        missing_rules = [rule for rule in ip_permissions if not rule_exists(rule, existing_rules)]

        if missing_rules:
            logging.info(f"Adding {len(missing_rules)} missing rules to the security group {group_id}.")
            await ec2_client.authorize_security_group_ingress(
                GroupId=group_id,
                IpPermissions=missing_rules
            )
        else:
            logging.info(f"Security group {group_id} already has all desired ingress rules.")
        return missing_rules

    except NoCredentialsError:
        logging.exception("Error: AWS credentials not found or are invalid.")
        raise GatewayError("AuthorizeSecurityGroupIngress", "NoCredentials", "AWS credentials error")
    except ClientError as e:
        raise GatewayError.from_client_error("AuthorizeSecurityGroupIngress", e)


async def delete_security_group(ec2_client, group_name: str) -> bool:
    """
    Deletes the named security group.
    Returns:
        bool: True if a group was deleted, False if it was already absent.
    Raises:
        GatewayError: For any failure other than the group being absent,
            e.g. DependencyViolation while an instance still uses it.
    """
    try:
        await ec2_client.delete_security_group(GroupName=group_name)
    except NoCredentialsError:
        logging.exception("Error: AWS credentials not found or are invalid.")
        raise GatewayError("DeleteSecurityGroup", "NoCredentials", "AWS credentials error")
    except ClientError as e:
        if is_not_found(e):
            logging.info(f"Security group '{group_name}' already absent ({error_code(e)}).")
            return False
        raise GatewayError.from_client_error("DeleteSecurityGroup", e)
    logging.info(f"Deleted security group '{group_name}'.")
    return True
