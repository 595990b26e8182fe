from typing import Any, Optional

from cipher import GoCipher
from models import (
    DependencyMaterialConfig,
    GitMaterialConfig,
    HgMaterialConfig,
    MaterialType,
    P4MaterialConfig,
    PackageMaterialConfig,
    PluggableScmMaterialConfig,
    SvnMaterialConfig,
    TfsMaterialConfig,
)
from redaction import mask_url_credentials
from representers import UnprocessableEntity, as_list, build_model, require_object, secure_value, with_errors


MATERIAL_CLASSES = {
    MaterialType.GIT.value: GitMaterialConfig,
    MaterialType.SVN.value: SvnMaterialConfig,
    MaterialType.HG.value: HgMaterialConfig,
    MaterialType.P4.value: P4MaterialConfig,
    MaterialType.TFS.value: TfsMaterialConfig,
    MaterialType.DEPENDENCY.value: DependencyMaterialConfig,
    MaterialType.PACKAGE.value: PackageMaterialConfig,
    MaterialType.PLUGIN.value: PluggableScmMaterialConfig,
}

_PASSWORD_MATERIALS = (SvnMaterialConfig, P4MaterialConfig, TfsMaterialConfig)


def invalid_material_type(material_type: Any) -> UnprocessableEntity:
    return UnprocessableEntity(
        f"Invalid material type '{material_type}'. It has to be one of '{', '.join(MATERIAL_CLASSES)}'."
    )


def _filter_to_json(ignore: Optional[list]) -> Optional[dict]:
    if ignore is None:
        return None
    return {"ignore": list(ignore)}


def _filter_from_json(value: Any) -> Optional[list]:
    if value is None:
        return None
    data = require_object(value, "filter")
    return [str(item) for item in as_list(data.get("ignore"))]


def _scm_attributes(material) -> dict:
    return {
        "name": material.name,
        "auto_update": material.auto_update,
        "destination": material.destination,
        "filter": _filter_to_json(material.filter),
    }


def material_to_json(material) -> dict:
    if isinstance(material, GitMaterialConfig):
        attributes = {
            "url": mask_url_credentials(material.url),
            **_scm_attributes(material),
            "branch": material.branch,
            "submodule_folder": material.submodule_folder,
            "shallow_clone": material.shallow_clone,
        }
    elif isinstance(material, SvnMaterialConfig):
        attributes = {
            "url": mask_url_credentials(material.url),
            **_scm_attributes(material),
            "check_externals": material.check_externals,
            "username": material.username,
            "encrypted_password": material.encrypted_password,
        }
    elif isinstance(material, HgMaterialConfig):
        attributes = {"url": mask_url_credentials(material.url), **_scm_attributes(material)}
    elif isinstance(material, P4MaterialConfig):
        attributes = {
            **_scm_attributes(material),
            "port": material.port,
            "use_tickets": material.use_tickets,
            "view": material.view,
            "username": material.username,
            "encrypted_password": material.encrypted_password,
        }
    elif isinstance(material, TfsMaterialConfig):
        attributes = {
            "url": mask_url_credentials(material.url),
            **_scm_attributes(material),
            "domain": material.domain,
            "project_path": material.project_path,
            "username": material.username,
            "encrypted_password": material.encrypted_password,
        }
    elif isinstance(material, DependencyMaterialConfig):
        attributes = {
            "pipeline": material.pipeline,
            "stage": material.stage,
            "name": material.name,
            "auto_update": material.auto_update,
        }
    elif isinstance(material, PackageMaterialConfig):
        attributes = {"ref": material.ref}
    elif isinstance(material, PluggableScmMaterialConfig):
        attributes = {
            "ref": material.ref,
            "destination": material.destination,
            "filter": _filter_to_json(material.filter),
        }
    else:
        raise invalid_material_type(getattr(material, "type", None))
    return with_errors({"type": material.type, "attributes": attributes}, material)


def material_from_json(payload: Any, cipher: GoCipher):
    data = require_object(payload, "material")
    material_type = data.get("type")
    material_cls = MATERIAL_CLASSES.get(material_type) if isinstance(material_type, str) else None
    if material_cls is None:
        raise invalid_material_type(material_type)
    attributes = dict(require_object(data.get("attributes") or {}, "material attributes"))

    if "filter" in attributes:
        attributes["filter"] = _filter_from_json(attributes["filter"])
    if issubclass(material_cls, _PASSWORD_MATERIALS):
        password, encrypted = secure_value(attributes, cipher, "password", "encrypted_password", True)
        attributes.pop("password", None)
        attributes["encrypted_password"] = encrypted if encrypted is not None else password

    # Unknown attributes are ignored the way the rest of the payload is.
    known = {key: value for key, value in attributes.items() if key in material_cls.model_fields and value is not None}
    known.pop("type", None)
    return build_model(material_cls, **known)


def materials_to_json(materials: list) -> list[dict]:
    return [material_to_json(material) for material in materials]


def materials_from_json(payload: Any, cipher: GoCipher) -> list:
    return [material_from_json(item, cipher) for item in as_list(payload)]
