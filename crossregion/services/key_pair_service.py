import logging
import os
from pathlib import Path
from typing import List

from botocore.exceptions import ClientError, NoCredentialsError

from crossregion.config.config import KEY_DIR, RESOURCE_PREFIX, TAG_KEY, TAG_VALUE
from crossregion.services.errors import GatewayError, is_not_found


def key_pair_name(region: str) -> str:
    return f"{RESOURCE_PREFIX}-{region}"


def key_file_path(region: str, key_dir: str = KEY_DIR) -> Path:
    return Path(key_dir) / f"{region}.pem"


async def describe_key_pairs(ec2_client, key_name: str) -> List[dict]:
    """Returns the provider's key pairs matching `key_name` (empty when absent)."""
    try:
        response = await ec2_client.describe_key_pairs(
            Filters=[{"Name": "key-name", "Values": [key_name]}]
        )
    except NoCredentialsError:
        logging.exception("Error: AWS credentials not found or are invalid.")
        raise GatewayError("DescribeKeyPairs", "NoCredentials", "AWS credentials error")
    except ClientError as e:
        if is_not_found(e):
            return []
        raise GatewayError.from_client_error("DescribeKeyPairs", e)
    return response.get("KeyPairs", [])


def write_private_key(key_path: Path, key_material: str) -> None:
    """Persists the private key, readable by the owner only."""
    key_path.parent.mkdir(parents=True, exist_ok=True)
    # A previous run may have left a read-only copy behind.
    key_path.unlink(missing_ok=True)
    with open(key_path, "w") as key_file:
        key_file.write(key_material)
    os.chmod(key_path, 0o400)


async def create_keypair(ec2_client, key_name: str, key_path: Path) -> str:
    """
    Asynchronously creates an EC2 key pair and saves its private key.
    The key pair is tagged with the ownership tag, and the private key
    material is written to `key_path` with owner-only read permission.
    Args:
        ec2_client: An asynchronous EC2 client instance.
        key_name (str): The name of the key pair to create.
        key_path (Path): Where the `.pem` file is written.
    Returns:
        str: The private key material returned by the provider.
    Raises:
        GatewayError: If the provider refuses to create the key pair.
    Note:
        The file operations for saving the private key are synchronous.
    """
    try:
        key_response = await ec2_client.create_key_pair(
            KeyName=key_name,
            TagSpecifications=[{
                "ResourceType": "key-pair",
                "Tags": [{"Key": TAG_KEY, "Value": TAG_VALUE}],
            }],
        )
    except NoCredentialsError:
        logging.exception("Error: AWS credentials not found or are invalid.")
        raise GatewayError("CreateKeyPair", "NoCredentials", "AWS credentials error")
    except ClientError as e:
        raise GatewayError.from_client_error("CreateKeyPair", e)

    key_material = key_response.get("KeyMaterial")
    write_private_key(key_path, key_material)
    logging.info(f"Created and saved key pair: {key_name} -> {key_path}")
    return key_material


async def delete_keypair(ec2_client, key_name: str, key_path: Path) -> None:
    """Deletes the key pair and its local key file; both may already be gone."""
    try:
        await ec2_client.delete_key_pair(KeyName=key_name)
    except NoCredentialsError:
        logging.exception("Error: AWS credentials not found or are invalid.")
        raise GatewayError("DeleteKeyPair", "NoCredentials", "AWS credentials error")
    except ClientError as e:
        if not is_not_found(e):
            raise GatewayError.from_client_error("DeleteKeyPair", e)
    logging.info(f"Key pair deleted: {key_name}")

    try:
        key_path.unlink()
    except FileNotFoundError:
        logging.info(f"No file to remove: {key_path}")
