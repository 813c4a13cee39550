from __future__ import annotations

from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .db import log_event
from .gateway import (
    BACKEND_GROUP,
    BACKEND_PORT,
    LISTENER_MISSING,
    LISTENER_PORT,
    LOAD_BALANCER,
    ListenerRef,
    Mismatch,
    ProviderError,
)
from .settings import settings


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def _forward_target(listener: dict[str, Any]) -> str | None:
    """Target group ARN the listener's default action forwards to."""
    actions = listener.get("DefaultActions") or []
    if not actions:
        return None
    action = actions[0]
    if action.get("TargetGroupArn"):
        return action["TargetGroupArn"]
    groups = (action.get("ForwardConfig") or {}).get("TargetGroups") or []
    return groups[0].get("TargetGroupArn") if groups else None


class AwsGateway:
    """Provider gateway backed by an AWS network load balancer (ELBv2) and EC2.

    Backend groups are target groups named ``<prefix><backend port>``, so a
    retried create finds and reuses the group instead of making a second one.
    """

    def __init__(
        self,
        vpc_id: str,
        region: str | None = None,
        elbv2: Any = None,
        ec2: Any = None,
        protocol: str = "TCP",
        target_group_prefix: str = "nlbc-",
    ) -> None:
        self.vpc_id = vpc_id
        self.elbv2 = elbv2 or boto3.client("elbv2", region_name=region)
        self.ec2 = ec2 or boto3.client("ec2", region_name=region)
        self.protocol = protocol
        self.target_group_prefix = target_group_prefix

    @classmethod
    def from_settings(cls) -> "AwsGateway":
        return cls(
            vpc_id=settings.vpc_id,
            region=settings.aws_region,
            protocol=settings.listener_protocol,
            target_group_prefix=settings.target_group_prefix,
        )

    def create_listener(self, load_balancer: str, port: int, backend_port: int, service: str) -> ListenerRef:
        try:
            lb_arn = self._load_balancer_arn(load_balancer)
            group_arn = self._ensure_backend_group(backend_port)

            existing = self._find_listener(lb_arn, port)
            if existing is not None:
                if _forward_target(existing) != group_arn:
                    raise ProviderError(f"aws: {load_balancer}:{port} already has a listener for another target group")
                log_event("INFO", f"Reusing listener on {load_balancer}:{port}", service_name=service)
                return ListenerRef(existing["ListenerArn"], group_arn)

            resp = self.elbv2.create_listener(
                LoadBalancerArn=lb_arn,
                Protocol=self.protocol,
                Port=int(port),
                DefaultActions=[{"Type": "forward", "TargetGroupArn": group_arn}],
                Tags=[{"Key": "nlbc/service", "Value": service}],
            )
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"aws: unable to create listener on {load_balancer}:{port}: {e}") from e

        listener_arn = resp["Listeners"][0]["ListenerArn"]
        log_event("INFO", f"Created listener on {load_balancer}:{port} -> {backend_port}", service_name=service)
        return ListenerRef(listener_arn, group_arn)

    def validate_listener(
        self,
        listener_handle: str,
        backend_group_handle: str,
        load_balancer: str,
        external_port: int,
        backend_port: int,
    ) -> Mismatch | None:
        if not listener_handle:
            return Mismatch(LISTENER_MISSING, "no listener recorded")
        try:
            try:
                listeners = self.elbv2.describe_listeners(ListenerArns=[listener_handle]).get("Listeners") or []
            except ClientError as e:
                if _error_code(e) != "ListenerNotFound":
                    raise
                listeners = []
            if not listeners:
                return Mismatch(LISTENER_MISSING, f"listener {listener_handle} does not exist")
            live = listeners[0]

            if live.get("Port") != external_port:
                return Mismatch(LISTENER_PORT, f"listener is on port {live.get('Port')}, expected {external_port}")

            if live.get("LoadBalancerArn") != self._load_balancer_arn(load_balancer):
                return Mismatch(LOAD_BALANCER, f"listener does not belong to {load_balancer}")

            target = _forward_target(live)
            if target != backend_group_handle:
                return Mismatch(BACKEND_GROUP, f"listener forwards to {target}, expected {backend_group_handle}")

            try:
                groups = self.elbv2.describe_target_groups(TargetGroupArns=[target]).get("TargetGroups") or []
            except ClientError as e:
                if _error_code(e) != "TargetGroupNotFound":
                    raise
                groups = []
            if not groups:
                return Mismatch(BACKEND_GROUP, f"target group {target} does not exist")
            if groups[0].get("Port") != backend_port:
                return Mismatch(BACKEND_PORT, f"target group port is {groups[0].get('Port')}, expected {backend_port}")
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"aws: unable to validate listener {listener_handle}: {e}") from e
        return None

    def delete_listener(self, listener_handle: str, backend_group_handle: str | None) -> None:
        if listener_handle:
            try:
                self.elbv2.delete_listener(ListenerArn=listener_handle)
            except ClientError as e:
                if _error_code(e) != "ListenerNotFound":
                    raise ProviderError(f"aws: unable to delete listener {listener_handle}: {e}") from e
            except BotoCoreError as e:
                raise ProviderError(f"aws: unable to delete listener {listener_handle}: {e}") from e

        if not backend_group_handle:
            return
        try:
            self.elbv2.delete_target_group(TargetGroupArn=backend_group_handle)
        except ClientError as e:
            if _error_code(e) != "TargetGroupNotFound":
                raise ProviderError(
                    f"aws: listener deleted but target group {backend_group_handle} was not: {e}"
                ) from e
        except BotoCoreError as e:
            raise ProviderError(f"aws: listener deleted but target group {backend_group_handle} was not: {e}") from e

    def _load_balancer_arn(self, name: str) -> str:
        try:
            found = self.elbv2.describe_load_balancers(Names=[name]).get("LoadBalancers") or []
        except ClientError as e:
            if _error_code(e) != "LoadBalancerNotFound":
                raise
            found = []
        if len(found) != 1:
            raise ProviderError(f"aws: {name} nlb not found")
        return found[0]["LoadBalancerArn"]

    def _find_listener(self, lb_arn: str, port: int) -> dict[str, Any] | None:
        paginator = self.elbv2.get_paginator("describe_listeners")
        for page in paginator.paginate(LoadBalancerArn=lb_arn):
            for listener in page.get("Listeners", []):
                if listener.get("Port") == port:
                    return listener
        return None

    def _ensure_backend_group(self, backend_port: int) -> str:
        name = f"{self.target_group_prefix}{int(backend_port)}"
        try:
            groups = self.elbv2.describe_target_groups(Names=[name]).get("TargetGroups") or []
        except ClientError as e:
            if _error_code(e) != "TargetGroupNotFound":
                raise
            groups = []
        if groups:
            return groups[0]["TargetGroupArn"]

        created = self.elbv2.create_target_group(
            Name=name,
            Protocol="TCP",
            Port=int(backend_port),
            VpcId=self.vpc_id,
            TargetType="instance",
        )
        group_arn = created["TargetGroups"][0]["TargetGroupArn"]
        try:
            instance_ids = self._vpc_instances()
            if instance_ids:
                self.elbv2.register_targets(
                    TargetGroupArn=group_arn,
                    Targets=[{"Id": i, "Port": int(backend_port)} for i in instance_ids],
                )
        except (ClientError, BotoCoreError):
            # A group without targets would be reused as-is by the next attempt.
            self._discard_group(group_arn)
            raise
        log_event("INFO", f"Created target group {name} with {len(instance_ids)} targets")
        return group_arn

    def _discard_group(self, group_arn: str) -> None:
        try:
            self.elbv2.delete_target_group(TargetGroupArn=group_arn)
        except (ClientError, BotoCoreError) as e:
            log_event("WARN", f"Unable to remove half-created target group {group_arn}: {e}")

    def _vpc_instances(self) -> list[str]:
        paginator = self.ec2.get_paginator("describe_instances")
        pages = paginator.paginate(
            Filters=[
                {"Name": "vpc-id", "Values": [self.vpc_id]},
                {"Name": "instance-state-name", "Values": ["running"]},
            ]
        )
        ids: list[str] = []
        for page in pages:
            for reservation in page.get("Reservations", []):
                ids.extend(i["InstanceId"] for i in reservation.get("Instances", []))
        return ids
