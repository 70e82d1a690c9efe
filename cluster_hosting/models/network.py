"""Data models for cluster network policy."""

from ipaddress import ip_network

from pydantic import BaseModel, Field, field_validator, model_validator

KUBE_API_PORT = 6443
KUBE_API_RULE = "kubeapi"

TARGET_CONTROL_PLANE = "control-plane"
TARGET_INGRESS = "ingress"

ANY_ADDRESS = "any"


class AddressRule(BaseModel):
    """Allow or deny traffic for an address or subnet.

    The address is either a CIDR, a single IPv4 address or "any".
    """

    address: str = ANY_ADDRESS
    action: str = "allow"

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Validate address is "any" or parses as an IPv4 network."""
        v = v.strip().lower()
        if v == ANY_ADDRESS:
            return v
        try:
            network = ip_network(v, strict=False)
        except ValueError as e:
            raise ValueError(f"address '{v}' must be 'any', an IPv4 address or a CIDR: {e}")
        if network.version != 4:
            raise ValueError(f"address '{v}' must be IPv4")
        return v

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str) -> str:
        """Validate action is allow or deny."""
        allowed = ["allow", "deny"]
        if v not in allowed:
            raise ValueError(f"action must be one of {allowed}, got '{v}'")
        return v

    @property
    def is_any(self) -> bool:
        return self.address == ANY_ADDRESS

    @property
    def cidr(self) -> str:
        """Address in CIDR form; "any" becomes 0.0.0.0/0."""
        if self.is_any:
            return "0.0.0.0/0"
        return str(ip_network(self.address, strict=False))


class HealthCheckOptions(BaseModel):
    """Target group health check policy."""

    interval_seconds: int = 10
    threshold_count: int = Field(default=3, ge=2, le=10)

    @field_validator("interval_seconds")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        """Network load balancers only accept 10 or 30 second intervals."""
        if v not in (10, 30):
            raise ValueError(f"interval_seconds must be 10 or 30, got {v}")
        return v


class IngressRule(BaseModel):
    """Routes an external load balancer port to a node port on a node population."""

    name: str
    protocol: str = "tcp"
    external_port: int = Field(gt=0, le=65535)
    node_port: int = Field(gt=0, le=65535)
    target: str = TARGET_INGRESS
    health_check: HealthCheckOptions | None = None
    address_rules: list[AddressRule] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v:
            raise ValueError("name cannot be empty")
        return v

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        """Validate protocol is one the load balancer can forward."""
        v = v.lower()
        allowed = ["tcp", "http", "https"]
        if v not in allowed:
            raise ValueError(f"protocol must be one of {allowed}, got '{v}'")
        return v

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        allowed = [TARGET_INGRESS, TARGET_CONTROL_PLANE]
        if v not in allowed:
            raise ValueError(f"target must be one of {allowed}, got '{v}'")
        return v


class NetworkOptions(BaseModel):
    """Cluster network policy."""

    ingress_rules: list[IngressRule] = Field(default_factory=list)
    first_external_ssh_port: int = Field(default=2211, gt=0, le=65535)
    last_external_ssh_port: int = Field(default=2299, gt=0, le=65535)
    nameservers: list[str] = Field(default_factory=list)
    management_address_rules: list[AddressRule] = Field(default_factory=list)
    egress_address_rules: list[AddressRule] = Field(default_factory=list)
    ingress_health_check: HealthCheckOptions = Field(default_factory=HealthCheckOptions)

    @model_validator(mode="after")
    def validate_ports(self) -> "NetworkOptions":
        """Validate the SSH port range and that ingress rules do not collide with it."""
        if self.first_external_ssh_port > self.last_external_ssh_port:
            raise ValueError(
                f"first_external_ssh_port ({self.first_external_ssh_port}) must not exceed "
                f"last_external_ssh_port ({self.last_external_ssh_port})"
            )

        names = set()
        ports = set()
        for rule in self.ingress_rules:
            if rule.name in names or rule.name == KUBE_API_RULE:
                raise ValueError(f"ingress rule name '{rule.name}' is duplicated or reserved")
            names.add(rule.name)
            if rule.external_port in ports or rule.external_port == KUBE_API_PORT:
                raise ValueError(f"ingress rule '{rule.name}' reuses external port {rule.external_port}")
            ports.add(rule.external_port)
            if self.is_external_ssh_port(rule.external_port):
                raise ValueError(
                    f"ingress rule '{rule.name}' external port {rule.external_port} "
                    "falls inside the external SSH port range"
                )
        return self

    @property
    def ssh_port_count(self) -> int:
        return self.last_external_ssh_port - self.first_external_ssh_port + 1

    def is_external_ssh_port(self, port: int) -> bool:
        return self.first_external_ssh_port <= port <= self.last_external_ssh_port

    def cluster_ingress_rules(self) -> list[IngressRule]:
        """Return the built-in management rules followed by the user rules."""
        kubeapi = IngressRule(
            name=KUBE_API_RULE,
            protocol="tcp",
            external_port=KUBE_API_PORT,
            node_port=KUBE_API_PORT,
            target=TARGET_CONTROL_PLANE,
            address_rules=list(self.management_address_rules),
        )
        return [kubeapi, *self.ingress_rules]
