import asyncio
import logging
from typing import List, Optional

from botocore.exceptions import ClientError, NoCredentialsError, WaiterError

from crossregion.config.config import (
    AMI_ARCHITECTURE,
    AMI_NAME,
    AMI_OWNER,
    AMI_VIRTUALIZATION_TYPE,
    INSTANCE_TYPE,
    TAG_KEY,
    TAG_VALUE,
    WAITER_DELAY,
    WAITER_MAX_ATTEMPTS,
)
from crossregion.models.region_models import InstanceRecord, InstanceState
from crossregion.services.errors import GatewayError, error_code, is_not_found

LIVE_STATES = ["pending", "running"]
OWNERSHIP_FILTER = {"Name": f"tag:{TAG_KEY}", "Values": [TAG_VALUE]}


def to_instance_record(region: str, instance: dict) -> InstanceRecord:
    return InstanceRecord(
        region=region,
        instance_id=instance["InstanceId"],
        state=InstanceState.from_provider(instance.get("State", {}).get("Name")),
        public_address=instance.get("PublicIpAddress"),
    )


def _flatten(response: dict) -> List[dict]:
    return [
        instance
        for reservation in response.get("Reservations", [])
        for instance in reservation.get("Instances", [])
    ]


async def describe_live_instances(ec2_client) -> List[dict]:
    """Returns every pending or running instance carrying the ownership tag."""
    try:
        response = await ec2_client.describe_instances(
            Filters=[OWNERSHIP_FILTER, {"Name": "instance-state-name", "Values": LIVE_STATES}]
        )
    except NoCredentialsError:
        logging.exception("Error: AWS credentials not found or are invalid.")
        raise GatewayError("DescribeInstances", "NoCredentials", "AWS credentials error")
    except ClientError as e:
        raise GatewayError.from_client_error("DescribeInstances", e)
    return _flatten(response)


async def describe_instances_with_retry(ec2_client, instance_ids, max_attempts: int = 5, initial_delay: float = 1.0):
    """
    Attempts to call ec2_client.describe_instances with exponential backoff.
    :param ec2_client: The AWS EC2 client.
    :param instance_ids: List of instance IDs to describe.
    :param max_attempts: Maximum number of retry attempts.
    :param initial_delay: Initial delay in seconds before retrying.
    :return: The flattened list of instance descriptions.
    :raises GatewayError: If all attempts fail.
    """
    delay = initial_delay
    attempt = 0
    while True:
        try:
            response = await ec2_client.describe_instances(InstanceIds=instance_ids)
            instances = _flatten(response)
            if instances:
                return instances
            # Freshly launched instances can take a moment to become visible.
            raise GatewayError("DescribeInstances", "InvalidInstanceID.NotFound",
                               "Instance data not available yet")
        except ClientError as e:
            error = GatewayError.from_client_error("DescribeInstances", e)
        except GatewayError as e:
            error = e
        attempt += 1
        if attempt >= max_attempts:
            logging.error("Maximum retry attempts reached. Giving up.")
            raise error
        logging.warning(f"Attempt {attempt} failed with error: {error}. Retrying in {delay} seconds...")
        await asyncio.sleep(delay)
        delay *= 2  # Exponential backoff: double the delay on each retry


async def find_ami(ec2_client, image_name: str = AMI_NAME) -> Optional[str]:
    """Resolves the image name filter to the newest matching image id in the client's region."""
    try:
        response = await ec2_client.describe_images(
            Filters=[
                {"Name": "architecture", "Values": [AMI_ARCHITECTURE]},
                {"Name": "state", "Values": ["available"]},
                {"Name": "virtualization-type", "Values": [AMI_VIRTUALIZATION_TYPE]},
                {"Name": "name", "Values": [image_name]},
            ],
            Owners=[AMI_OWNER],
        )
    except NoCredentialsError:
        logging.exception("Error: AWS credentials not found or are invalid.")
        raise GatewayError("DescribeImages", "NoCredentials", "AWS credentials error")
    except ClientError as e:
        raise GatewayError.from_client_error("DescribeImages", e)
    images = response.get("Images", [])
    if not images:
        return None
    return max(images, key=lambda image: image.get("CreationDate", ""))["ImageId"]


async def run_instance(ec2_client, ami_id: str, key_name: str, security_group_name: Optional[str]) -> dict:
    """
    Launches exactly one tagged instance.
    Args:
        ec2_client: The EC2 client of the target region.
        ami_id (str): Image to boot.
        key_name (str): Key pair installed for the remote user.
        security_group_name (Optional[str]): Group to attach, None for the VPC default.
    Returns:
        dict: The provider's description of the new instance.
    Raises:
        GatewayError: If the launch is refused.
    """
    params = {
        "ImageId": ami_id,
        "InstanceType": INSTANCE_TYPE,
        "KeyName": key_name,
        "MinCount": 1,
        "MaxCount": 1,
        # Tag at launch so a status query never misses the new instance.
        "TagSpecifications": [{
            "ResourceType": "instance",
            "Tags": [{"Key": TAG_KEY, "Value": TAG_VALUE}],
        }],
    }
    if security_group_name:
        params["SecurityGroups"] = [security_group_name]
    try:
        logging.info("Creating the EC2 instance")
        response = await ec2_client.run_instances(**params)
    except NoCredentialsError:
        logging.exception("Error: AWS credentials not found or are invalid.")
        raise GatewayError("RunInstances", "NoCredentials", "AWS credentials error")
    except ClientError as e:
        raise GatewayError.from_client_error("RunInstances", e)
    return response["Instances"][0]


async def tag_instance(ec2_client, instance_id: str, name: str) -> None:
    try:
        await ec2_client.create_tags(
            Resources=[instance_id],
            Tags=[{"Key": TAG_KEY, "Value": TAG_VALUE}, {"Key": "Name", "Value": name}],
        )
    except NoCredentialsError:
        logging.exception("Error: AWS credentials not found or are invalid.")
        raise GatewayError("CreateTags", "NoCredentials", "AWS credentials error")
    except ClientError as e:
        raise GatewayError.from_client_error("CreateTags", e)
    logging.info(f"Instance tagged: {instance_id} ({name})")


async def wait_for_state(
    ec2_client,
    waiter_name: str,
    instance_ids: List[str],
    delay: int = WAITER_DELAY,
    max_attempts: int = WAITER_MAX_ATTEMPTS,
) -> None:
    """
    Blocks until every instance reaches the waiter's target state.
    The wait is bounded by `delay * max_attempts` seconds; running out of
    attempts raises GatewayError with code "WaiterTimeout".
    """
    waiter = ec2_client.get_waiter(waiter_name)
    try:
        await waiter.wait(
            InstanceIds=instance_ids,
            WaiterConfig={"Delay": delay, "MaxAttempts": max_attempts},
        )
    except WaiterError as e:
        raise GatewayError(waiter_name, "WaiterTimeout", str(e))
    except ClientError as e:
        raise GatewayError.from_client_error(waiter_name, e)


async def terminate_instances(ec2_client, instance_ids: List[str]) -> List[str]:
    """
    Asynchronously terminates a list of EC2 instances.
    Terminating an instance that is already terminated is not an error;
    unknown ids are logged and treated as already gone. The provider rejects
    the whole batch when any id is unknown, so a rejected batch is retried
    one id at a time and the known instances are still terminated.
    Args:
        ec2_client: An aioboto3 EC2 client instance.
        instance_ids (list[str]): EC2 instance IDs to terminate.
    Returns:
        list[str]: The ids the provider reported as terminating.
    Raises:
        GatewayError: If credentials are missing or the provider call fails.
    """
    try:
        logging.info(f"Initiating asynchronous termination for instances: {instance_ids}")
        response = await ec2_client.terminate_instances(InstanceIds=instance_ids)
    except NoCredentialsError:
        logging.exception("AWS credentials are invalid or missing.")
        raise GatewayError("TerminateInstances", "NoCredentials", "AWS credentials error")
    except ClientError as e:
        if is_not_found(e) and len(instance_ids) > 1:
            logging.warning(f"Batch termination rejected ({error_code(e)}); retrying one by one")
            terminating = []
            for instance_id in instance_ids:
                terminating.extend(await terminate_instances(ec2_client, [instance_id]))
            return terminating
        if is_not_found(e):
            logging.warning(f"Instance already gone: {instance_ids}")
            return []
        raise GatewayError.from_client_error("TerminateInstances", e)
    return [item["InstanceId"] for item in response.get("TerminatingInstances", [])]
