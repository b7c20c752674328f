#
# Security Hub findings to MS Teams
# Usage: works as a Lambda function triggered by an EventBridge rule on
# "Security Hub Findings - Imported" + locally by specifying an event file
#
# pylint: disable=line-too-long,global-statement,missing-function-docstring
# pylint: disable=missing-class-docstring,too-many-instance-attributes

import os
import sys
import json
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import quote, urlparse
import boto3
from botocore.exceptions import ClientError
import urllib3

http = urllib3.PoolManager()

#
# ENV VARS
#
WEBHOOK_URL_ENV = 'webHookUrl'
WEBHOOK_URL_PARAM_ENV = 'webHookUrlParameter'

#
# CONSTANTS
#
CONSOLE_URL = 'https://console.aws.amazon.com/securityhub'
ACTIVITY_IMAGE_URL = 'https://raw.githubusercontent.com/aws-samples/aws-securityhub-findings-to-msteams/master/images/securityhub.png'
CARD_SUMMARY = 'SecurityHub Finding'
LOCAL_EVENT_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'events', 'securityhub_finding.json')

# (label, lowest normalized score, highest normalized score, color)
SEVERITY_BANDS = [
    ('LOW', 1, 39, '#879596'),
    ('MEDIUM', 40, 69, '#ed7211'),
    ('HIGH', 70, 89, '#d13212'),
    ('CRITICAL', 90, 100, '#ff0209'),
]
INFORMATIONAL = ('INFORMATIONAL', '#007cbc')

_config = None


#
# ERRORS
#
class NotifierError(Exception):
    pass


class ConfigurationError(NotifierError):
    pass


class ValidationError(NotifierError):
    """Raised when a finding event lacks fields the message card is built from."""

    def __init__(self, missing_fields: list):
        self.missing_fields = list(missing_fields)
        super().__init__('Finding event is missing required fields: {}'.format(', '.join(self.missing_fields)))


class NetworkError(NotifierError):
    pass


class DeliveryError(NotifierError):
    """Raised when the webhook answers with a server error (5xx)."""

    def __init__(self, status: int, reason: str):
        self.status = status
        self.reason = reason
        super().__init__('Server error when processing message: {} - {}'.format(status, reason))


#
# MODELS
#
@dataclass(frozen=True)
class WebhookConfig:
    url: str

    @property
    def host(self) -> str:
        return urlparse(self.url).netloc

    @staticmethod
    def from_env(environ=None) -> 'WebhookConfig':
        environ = os.environ if environ is None else environ
        url = environ.get(WEBHOOK_URL_ENV)
        if not url and environ.get(WEBHOOK_URL_PARAM_ENV):
            url = get_webhook_url_from_ssm(environ[WEBHOOK_URL_PARAM_ENV])
        if not url:
            raise ConfigurationError('Webhook URL not configured, set {} or {}'.format(WEBHOOK_URL_ENV, WEBHOOK_URL_PARAM_ENV))

        parsed = urlparse(url)
        if parsed.scheme != 'https' or not parsed.netloc:
            raise ConfigurationError('Webhook URL must be an https:// URL')
        return WebhookConfig(url=url)


@dataclass(frozen=True)
class Finding:
    finding_type: str
    description: str
    updated_at: str
    account_id: str
    severity_normalized: Optional[float]
    region: str
    resource_type: str
    resource_id: str
    resource: dict
    recommendation_text: str
    recommendation_url: str
    title: str


class DeliveryOutcome(Enum):
    SUCCESS = 'success'
    REJECTED = 'rejected'
    FAILED = 'failed'


@dataclass
class DeliveryResult:
    status: int
    reason: str
    body: str

    @property
    def outcome(self) -> DeliveryOutcome:
        return classify_status(self.status)

    @property
    def ok(self) -> bool:
        return self.outcome is not DeliveryOutcome.FAILED


#
# DEFINITIONS
#
def get_webhook_url_from_ssm(parameter_name: str) -> str:
    print('[INFO] Reading webhook URL from SSM parameter: {}'.format(parameter_name))
    ssm_client = boto3.client('ssm')
    try:
        response = ssm_client.get_parameter(Name=parameter_name, WithDecryption=True)
    except ClientError as error:
        print('[ERR] ' + str(error))
        raise ConfigurationError('Unable to read SSM parameter {}'.format(parameter_name)) from error
    return response['Parameter']['Value']


def load_config(refresh: bool = False) -> WebhookConfig:
    global _config

    if _config is None or refresh:
        try:
            _config = WebhookConfig.from_env()
        except ConfigurationError as error:
            print('[ERR] ' + str(error))
            raise
        print('[INFO] Webhook configured for host: {}'.format(_config.host))
    return _config


def _first(items):
    if isinstance(items, list) and items:
        return items[0]
    return None


def _dig(record, path: str):
    for key in path.split('.'):
        if not isinstance(record, dict):
            return None
        record = record.get(key)
    return record


def decode_finding_event(event: dict) -> Finding:
    """
    Validate a Security Hub EventBridge event and pull out the first finding.

    Only detail.findings[0] and its Resources[0] are read. Every required
    field that is absent, None or an empty list is reported in a single
    ValidationError so a broken integration shows all of its gaps at once.
    """
    findings = _dig(event, 'detail.findings')
    finding = _first(findings)
    if not isinstance(finding, dict):
        raise ValidationError(['detail.findings[0]'])
    if len(findings) > 1:
        print('[WARN] Event carries {} findings, only the first one is posted'.format(len(findings)))

    prefix = 'detail.findings[0].'
    missing = []

    def require(value, path):
        if value is None:
            missing.append(prefix + path)
        return value

    finding_type = require(_first(finding.get('Types')), 'Types[0]')
    description = require(finding.get('Description'), 'Description')
    updated_at = require(finding.get('UpdatedAt'), 'UpdatedAt')
    account_id = require(finding.get('AwsAccountId'), 'AwsAccountId')

    resources = finding.get('Resources')
    resource = require(_first(resources), 'Resources[0]')
    region = resource_type = resource_id = None
    if resource is not None:
        if len(resources) > 1:
            print('[WARN] Finding lists {} resources, only the first one is posted'.format(len(resources)))
        region = require(_dig(resource, 'Region'), 'Resources[0].Region')
        resource_type = require(_dig(resource, 'Type'), 'Resources[0].Type')
        resource_id = require(_dig(resource, 'Id'), 'Resources[0].Id')

    recommendation_text = require(_dig(finding, 'Remediation.Recommendation.Text'), 'Remediation.Recommendation.Text')
    recommendation_url = require(_dig(finding, 'Remediation.Recommendation.Url'), 'Remediation.Recommendation.Url')
    title = require(finding.get('Title'), 'Title')

    if missing:
        raise ValidationError(missing)

    return Finding(
        finding_type=finding_type,
        description=description,
        updated_at=updated_at,
        account_id=account_id,
        severity_normalized=_dig(finding, 'Severity.Normalized'),
        region=region,
        resource_type=resource_type,
        resource_id=resource_id,
        resource=resource,
        recommendation_text=recommendation_text,
        recommendation_url=recommendation_url,
        title=title,
    )


def severity_band(normalized) -> tuple:
    """Return (label, color) for a Security Hub normalized severity score."""
    if isinstance(normalized, (int, float)) and not isinstance(normalized, bool):
        for label, low, high, color in SEVERITY_BANDS:
            if low <= normalized <= high:
                return label, color
    return INFORMATIONAL


def build_findings_url(region: str, resource_id: str) -> str:
    return '{}/home?region={}#/findings?search=id%3D{}'.format(CONSOLE_URL, region, quote(str(resource_id), safe=''))


def build_facts(finding: Finding, severity: str) -> list:
    resource_json = json.dumps(finding.resource, indent=2, ensure_ascii=False)
    return [
        {'name': 'Severity', 'value': severity},
        {'name': 'Region', 'value': finding.region},
        {'name': 'Resource Type', 'value': finding.resource_type},
        {'name': 'Resource Identifier', 'value': '***{}***'.format(finding.resource_id)},
        {'name': 'Time Last Seen in Security Hub', 'value': finding.updated_at},
        {'name': 'Recommendation', 'value': finding.recommendation_text},
        {'name': 'Recommendation URL', 'value': finding.recommendation_url},
        {'name': 'Resource', 'value': '```' + resource_json + '```'},
    ]


def build_message_card(finding: Finding) -> dict:
    severity, color = severity_band(finding.severity_normalized)
    section = {
        'summary': '{} - {}'.format(finding.finding_type, build_findings_url(finding.region, finding.resource_id)),
        'activitySubtitle': 'AWS SecurityHub finding in **{}** for Acct: **{}**'.format(finding.region, finding.account_id),
        'activityTitle': finding.title,
        'activityImage': ACTIVITY_IMAGE_URL,
        'text': finding.description,
        'facts': build_facts(finding, severity),
        'markdown': True,
        'themeColor': color,
    }
    return {
        '@type': 'MessageCard',
        '@context': 'http://schema.org/extensions',
        'themeColor': color,
        'summary': CARD_SUMMARY,
        'sections': [section],
    }


def classify_status(status: int) -> DeliveryOutcome:
    if status < 400:
        return DeliveryOutcome.SUCCESS
    if status < 500:
        return DeliveryOutcome.REJECTED
    return DeliveryOutcome.FAILED


def post_message(message: dict, config: WebhookConfig, pool=None) -> DeliveryResult:
    pool = pool or http
    body = json.dumps(message).encode('utf-8')
    headers = {
        'Content-Type': 'application/json',
        'Content-Length': str(len(body)),
    }

    try:
        resp = pool.request('POST', config.url, body=body, headers=headers, retries=False)
    except urllib3.exceptions.HTTPError as error:
        print('[ERR] Posting message to {} failed: {}'.format(config.host, error))
        raise NetworkError('Unable to reach Microsoft Teams webhook at {}: {}'.format(config.host, error)) from error

    result = DeliveryResult(
        status=resp.status,
        reason=resp.reason or '',
        body=resp.data.decode('utf-8', errors='replace'),
    )

    if result.outcome is DeliveryOutcome.SUCCESS:
        print('[INFO] Message posted successfully')
    elif result.outcome is DeliveryOutcome.REJECTED:
        print('[ERR] Error posting message to Microsoft Teams API: {} - {}'.format(result.status, result.reason))
    return result


def process_event(event: dict, config: WebhookConfig, pool=None) -> DeliveryResult:
    try:
        finding = decode_finding_event(event)
    except ValidationError as error:
        print('[ERR] ' + str(error))
        raise

    print('[INFO] Posting finding "{}" for resource: {}'.format(finding.title, finding.resource_id))
    message = build_message_card(finding)
    return post_message(message, config, pool)


#
# FIRE
#
def lambda_handler(event, context):
    print('[INFO] Event received:\n' + json.dumps(event, indent=2, default=str))

    config = load_config()
    result = process_event(event, config)

    if result.outcome is DeliveryOutcome.FAILED:
        error = DeliveryError(result.status, result.reason)
        print('[ERR] ' + str(error))
        raise error


#
# MAIN
#
if __name__ == '__main__':
    event_file = sys.argv[1] if len(sys.argv) > 1 else LOCAL_EVENT_FILE
    print('[INFO] Loading event from {} file...'.format(event_file))
    with open(event_file, 'r') as event_fh:
        lambda_handler(json.load(event_fh), None)
