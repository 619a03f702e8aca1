#!/usr/bin/env python3
"""
Request Decorator for Ingress Uploader
Sets Content-Type, User-Agent and Authorization on upload requests
"""

import logging

logger = logging.getLogger(__name__)


class UserAgentConfig:
    """
    Builds the User-Agent header: '<operator>/<commit> cluster/<cluster-id>'.

    The cluster ID is looked up per request, so availability errors from the
    identity provider surface at send time.
    """

    def __init__(self, operator_name: str, operator_commit: str, cluster_identity=None):
        self.operator_name = operator_name
        self.operator_commit = operator_commit
        self.cluster_identity = cluster_identity

    def user_agent(self) -> str:
        cluster_id = self.cluster_identity.cluster_id() if self.cluster_identity else "unknown"
        return f"{self.operator_name}/{self.operator_commit} cluster/{cluster_id}"


class RequestDecorator:
    """
    Applies common headers to a request before it is prepared.

    Example:
        >>> decorator = RequestDecorator(UserAgentConfig('ingress-uploader', '1.0.0'), authorizer)
        >>> decorator.update_headers(request, 'multipart/form-data; boundary=abc')
    """

    def __init__(self, user_agent_config: UserAgentConfig = None, authorizer=None):
        self.user_agent_config = user_agent_config
        self.authorizer = authorizer

    def update_headers(self, request, content_type: str):
        """
        Set headers on the request.

        Raises:
            TransientAvailabilityError: If the cluster ID is not available yet
            InvalidCredentialError: If the configured token is malformed
        """
        if content_type:
            request.headers["Content-Type"] = content_type

        if self.user_agent_config is not None:
            user_agent = self.user_agent_config.user_agent()
            if user_agent:
                request.headers["User-Agent"] = user_agent

        if self.authorizer is not None:
            self.authorizer.authorize(request)

        return request
