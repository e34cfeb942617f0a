"""Custom resource handlers for the concerns templates cannot express declaratively."""
from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import boto3
import requests
from botocore.config import Config
from requests.auth import HTTPBasicAuth

from stackrunner.conditions import canonical_text
from stackrunner.custom_resources import CustomResourceHandler, HandlerEvent

LOG = logging.getLogger(__name__)

CLIENT_CONFIG = Config(retries={"max_attempts": 3, "mode": "adaptive"})

DEFAULT_ROOT_FOLDER = "ragdp-pipeline-assets"
DEFAULT_DIRECTORIES = (
  "lambda-functions/",
  "glue-etl-scripts/",
  "data/uploads/",
  "data/processed/",
  "models/sagemaker-models/",
  "logs/lambda-logs/",
  "logs/glue-logs/",
  "temp/",
)

DEFAULT_TEMPLATE_NAME = "rag_vector_template"


def vector_index_template(dimension: int = 768, index_patterns: Sequence[str] = ("rag-*",)) -> Dict[str, Any]:
  return {
    "index_patterns": list(index_patterns),
    "template": {
      "settings": {
        "index": {
          "knn": True,
          "knn.algo_param.ef_search": 512,
        }
      },
      "mappings": {
        "properties": {
          "vector_field": {
            "type": "knn_vector",
            "dimension": dimension,
            "method": {
              "name": "hnsw",
              "space_type": "cosine",
              "engine": "nmslib",
              "parameters": {"ef_construction": 512, "m": 16},
            },
          },
          "text": {"type": "text"},
          "metadata": {"type": "object"},
        }
      },
    },
  }


class TagSynthesisHandler(CustomResourceHandler):
  """Turns a ``Tags`` property into a normalized tag list readable through ``Fn::GetAtt``."""

  def create(self, event: HandlerEvent) -> Tuple[Optional[str], Mapping[str, Any]]:
    raw = event.properties.get("Tags") or []
    if isinstance(raw, Mapping):
      raw = [{"Key": key, "Value": value} for key, value in raw.items()]
    tags: List[Dict[str, str]] = []
    for entry in raw:
      if not isinstance(entry, Mapping) or "Key" not in entry:
        raise ValueError(f"Tag entries must be mappings with a Key, got {entry!r}")
      tags.append({"Key": str(entry["Key"]), "Value": canonical_text(entry.get("Value", ""))})
    digest = hashlib.sha1(event.correlation_token.encode("utf-8")).hexdigest()[:12]
    return event.physical_id or f"tags-{digest}", {"Tags": tags}


class DirectorySeedingHandler(CustomResourceHandler):
  """Creates folder marker objects in a bucket. Delete leaves them in place."""

  def __init__(
    self,
    client: Any = None,
    *,
    root_folder: str = DEFAULT_ROOT_FOLDER,
    directories: Sequence[str] = DEFAULT_DIRECTORIES,
  ) -> None:
    self._client = client
    self.root_folder = root_folder
    self.directories = tuple(directories)

  @property
  def client(self) -> Any:
    if self._client is None:
      self._client = boto3.client("s3", config=CLIENT_CONFIG)
    return self._client

  def create(self, event: HandlerEvent) -> Tuple[Optional[str], Mapping[str, Any]]:
    bucket = event.properties.get("BucketName")
    if not bucket:
      raise ValueError("BucketName property is required")
    root = str(event.properties.get("RootFolder") or self.root_folder).strip("/")
    directories = event.properties.get("Directories") or self.directories

    keys: List[str] = []
    for directory in directories:
      key = f"{root}/{str(directory).strip('/')}/"
      LOG.info("Creating directory: %s", key)
      self.client.put_object(Bucket=bucket, Key=key)
      keys.append(key)
    return event.physical_id or f"{bucket}/{root}/", {"Message": "Directories created successfully", "Keys": keys}


class IndexTemplateHandler(CustomResourceHandler):
  """Installs the k-NN vector index template on a search domain. Delete is a no-op."""

  def __init__(
    self,
    secrets_client: Any = None,
    session: Optional[requests.Session] = None,
    *,
    template_name: str = DEFAULT_TEMPLATE_NAME,
    verify: bool = True,
    timeout: float = 30.0,
  ) -> None:
    self._secrets_client = secrets_client
    self._session = session
    self.template_name = template_name
    self.verify = verify
    self.timeout = timeout

  @property
  def secrets_client(self) -> Any:
    if self._secrets_client is None:
      self._secrets_client = boto3.client("secretsmanager", config=CLIENT_CONFIG)
    return self._secrets_client

  @property
  def session(self) -> requests.Session:
    if self._session is None:
      self._session = requests.Session()
    return self._session

  def _credentials(self, secret_id: str) -> Tuple[str, str]:
    secret = self.secrets_client.get_secret_value(SecretId=secret_id)
    payload = json.loads(secret["SecretString"])
    return payload["username"], payload["password"]

  def create(self, event: HandlerEvent) -> Tuple[Optional[str], Mapping[str, Any]]:
    properties = event.properties
    host = properties.get("DomainEndpoint")
    secret_id = properties.get("MasterUserSecret")
    if not host or not secret_id:
      raise ValueError("DomainEndpoint and MasterUserSecret properties are required")

    name = str(properties.get("TemplateName") or self.template_name)
    template = vector_index_template(int(properties.get("Dimension", 768)))
    username, password = self._credentials(secret_id)
    url = f"https://{host}/_index_template/{name}"
    response = self.session.put(
      url,
      auth=HTTPBasicAuth(username, password),
      json=template,
      headers={"Content-Type": "application/json"},
      verify=self.verify,
      timeout=self.timeout,
    )
    if response.status_code not in (200, 201):
      raise RuntimeError(f"Failed to create index template: {response.text}")
    return event.physical_id or url, {
      "Message": "Successfully created OpenSearch index template",
      "TemplateName": name,
    }


def default_handlers() -> Dict[str, CustomResourceHandler]:
  tags = TagSynthesisHandler()
  directories = DirectorySeedingHandler()
  index_template = IndexTemplateHandler()
  return {
    "Custom::Tags": tags,
    "Custom::S3Directories": directories,
    "Custom::OpenSearchIndexTemplate": index_template,
    "tag-synthesis": tags,
    "directory-seeding": directories,
    "index-template": index_template,
  }
