"""AWS provider built on the Cloud Control API.

Cloud Control exposes create/read/update/delete for every CloudFormation
resource type, so a single plugin covers the whole AWS catalogue. Mutating
calls return a request token that is polled with bounded backoff until the
operation reaches a terminal status.
"""

import json
import threading
import uuid
from typing import Any, Dict, Optional, Tuple

from botocore.exceptions import ClientError

from converge.provisioners.base import BaseProvider
from converge.utils.aws_client import AWSClientManager
from converge.utils.errors import (
    ErrorContext,
    ProviderError,
    ResourceNotFoundError,
    error_handler,
)
from converge.utils.logging import get_logger
from converge.utils.retry import Poller, PollTimeoutError, RetryStrategy

logger = get_logger(__name__)

TERMINAL_STATUSES = {"SUCCESS", "FAILED", "CANCEL_COMPLETE"}


def to_type_name(resource_type: str) -> str:
    """Convert a declared type to a CloudFormation type name.

    ``AWS__EC2__VPC`` becomes ``AWS::EC2::VPC``; names that already contain
    ``::`` are returned unchanged.
    """
    if "::" in resource_type:
        return resource_type
    return resource_type.replace("__", "::")


class CloudControlProvider(BaseProvider):
    """Provisions AWS resources through the Cloud Control API."""

    name = "cloudcontrol"

    def __init__(
        self,
        client_manager: Optional[AWSClientManager] = None,
        client=None,
        type_names: Optional[Dict[str, str]] = None,
        poller: Optional[Poller] = None,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """
        Args:
            client_manager: Source of the boto3 cloudcontrol client
            client: Explicit client, used instead of client_manager
            type_names: Declared type to CloudFormation type name overrides
            poller: Backoff used while waiting for requests to finish
            retry_strategy: Backoff for throttled API calls
        """
        self.client_manager = client_manager
        self._client = client
        self.type_names = type_names or {}
        self.poller = poller or Poller()
        self.retry_strategy = retry_strategy or RetryStrategy(max_retries=3)
        self._client_lock = threading.Lock()

    @property
    def client(self):
        """Cloud Control client, created on first use by whichever worker gets here first."""
        with self._client_lock:
            if self._client is None:
                self._client = (self.client_manager or AWSClientManager()).get_client("cloudcontrol")
            return self._client

    def create(self, resource_type: str, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        type_name = self._type_name(resource_type)
        response = self._call(
            "create", resource_type,
            self.client.create_resource,
            TypeName=type_name,
            DesiredState=json.dumps(attributes),
            ClientToken=str(uuid.uuid4()),
        )
        event = self._wait(resource_type, "create", response["ProgressEvent"])
        physical_id = event["Identifier"]
        logger.info(f"Created {type_name} {physical_id}")
        return physical_id, self._outputs(resource_type, physical_id, attributes)

    def read(self, resource_type: str, physical_id: str) -> Dict[str, Any]:
        response = self._call(
            "read", resource_type,
            self.client.get_resource,
            TypeName=self._type_name(resource_type),
            Identifier=physical_id,
        )
        return json.loads(response["ResourceDescription"].get("Properties") or "{}")

    def update(
        self,
        resource_type: str,
        physical_id: str,
        attributes: Dict[str, Any],
        previous: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        patch = [
            {"op": "add", "path": f"/{key}", "value": value}
            for key, value in sorted(attributes.items())
        ]
        patch.extend(
            {"op": "remove", "path": f"/{key}"}
            for key in sorted(set(previous or {}) - set(attributes))
        )
        response = self._call(
            "update", resource_type,
            self.client.update_resource,
            TypeName=self._type_name(resource_type),
            Identifier=physical_id,
            PatchDocument=json.dumps(patch),
            ClientToken=str(uuid.uuid4()),
        )
        self._wait(resource_type, "update", response["ProgressEvent"])
        return self._outputs(resource_type, physical_id, attributes)

    def delete(self, resource_type: str, physical_id: str) -> None:
        try:
            response = self._call(
                "delete", resource_type,
                self.client.delete_resource,
                TypeName=self._type_name(resource_type),
                Identifier=physical_id,
                ClientToken=str(uuid.uuid4()),
            )
            self._wait(resource_type, "delete", response["ProgressEvent"])
        except ResourceNotFoundError:
            logger.info(f"{resource_type} {physical_id} was already deleted")

    def _type_name(self, resource_type: str) -> str:
        return self.type_names.get(resource_type) or to_type_name(resource_type)

    def _outputs(self, resource_type: str, physical_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Properties the provider assigned beyond the declared attributes."""
        properties = self.read(resource_type, physical_id)
        return {key: value for key, value in properties.items() if key not in attributes}

    def _call(self, operation: str, resource_type: str, func, **kwargs) -> Dict[str, Any]:
        context = ErrorContext(resource_type=resource_type, operation=operation, provider=self.name)
        try:
            return self.retry_strategy.execute_with_retry(func, **kwargs)
        except ClientError as e:
            raise error_handler.handle_exception(e, context)

    def _wait(self, resource_type: str, operation: str, event: Dict[str, Any]) -> Dict[str, Any]:
        """Poll a request until it reaches a terminal status."""
        if event.get("OperationStatus") not in TERMINAL_STATUSES:
            token = event["RequestToken"]
            try:
                event = self.poller.poll(
                    lambda: self._call(
                        operation, resource_type,
                        self.client.get_resource_request_status,
                        RequestToken=token,
                    )["ProgressEvent"],
                    lambda e: e.get("OperationStatus") in TERMINAL_STATUSES,
                    description=f"{operation} {resource_type}",
                )
            except PollTimeoutError as e:
                raise ProviderError(
                    str(e),
                    context=ErrorContext(
                        resource_type=resource_type, operation=operation,
                        provider=self.name, request_id=token
                    ),
                    cause=e
                )

        status = event.get("OperationStatus")
        if status == "SUCCESS":
            return event

        context = ErrorContext(
            resource_type=resource_type,
            operation=operation,
            provider=self.name,
            request_id=event.get("RequestToken"),
            additional_info={"error_code": event.get("ErrorCode")},
        )
        message = f"{operation} {resource_type} ended with {status}: {event.get('StatusMessage', 'no details')}"
        if event.get("ErrorCode") == "NotFound":
            raise ResourceNotFoundError(message, context=context)
        raise ProviderError(message, context=context)
