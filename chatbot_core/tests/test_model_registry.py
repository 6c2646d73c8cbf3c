import pytest

from chatbot_core.domain.ai_model import AIModel
from chatbot_core.domain.exceptions import ModelNotFound, NoDefaultModel
from chatbot_core.providers.registry import ModelRegistry, get_provider_config


class MemoryModelStore:
    def __init__(self, models):
        self._models = {m.id: m for m in models}

    def list_models(self):
        return list(self._models.values())

    def get_model(self, model_id):
        return self._models.get(model_id)

    def save_model(self, model):
        self._models[model.id] = model
        return model


def _models():
    return [
        AIModel(id=1, name="glm-4", display_name="GLM-4", provider="zhipu", is_default=True),
        AIModel(id=2, name="glm-4-flash", display_name="GLM-4 Flash", provider="zhipu"),
        AIModel(id=3, name="old", display_name="Old", provider="zhipu", enabled=False),
    ]


def test_registry_lists_enabled_only():
    reg = ModelRegistry(MemoryModelStore(_models()))
    assert [m.id for m in reg.list_enabled()] == [1, 2]


def test_registry_lookup():
    reg = ModelRegistry(MemoryModelStore(_models()))
    assert reg.get_by_id(2).name == "glm-4-flash"
    assert reg.get_by_name("glm-4").id == 1
    with pytest.raises(ModelNotFound):
        reg.get_by_id(3)
    with pytest.raises(ModelNotFound):
        reg.get_by_name("gpt-5")


def test_registry_resolve_falls_back_to_default():
    reg = ModelRegistry(MemoryModelStore(_models()))
    assert reg.resolve(None).id == 1
    assert reg.resolve(2).id == 2
    assert reg.resolve(9999).id == 1
    with pytest.raises(ModelNotFound):
        reg.resolve(9999, strict=True)


def test_registry_no_default():
    models = _models()
    models[0].is_default = False
    reg = ModelRegistry(MemoryModelStore(models))
    with pytest.raises(NoDefaultModel):
        reg.get_default()
    with pytest.raises(NoDefaultModel):
        reg.resolve(9999)


def test_registry_multiple_defaults_picks_lowest_id():
    models = _models()
    models[1].is_default = True
    reg = ModelRegistry(MemoryModelStore(list(reversed(models))))
    assert reg.get_default().id == 1


def test_provider_config_case_insensitive():
    assert get_provider_config("Coze").base_url == "https://api.coze.cn"
    with pytest.raises(KeyError):
        get_provider_config("nope")
