import pytest
from pathlib import Path
from buildphp import PhpenvLayout

@pytest.fixture
def layout(tmp_path):
    """Create a PhpenvLayout rooted in a temporary directory"""
    return PhpenvLayout(tmp_path / "phpenv", tmp_path / "config" / "php")

def test_layout_init(layout, tmp_path):
    """Test PhpenvLayout initialization and path attributes"""
    assert isinstance(layout.root, Path)
    assert layout.src == layout.root / "php-src"
    assert layout.git_dir == layout.root / "php-src" / ".git"
    assert layout.versions == layout.root / "versions"
    assert layout.config_root == tmp_path / "config" / "php"

def test_layout_defaults():
    """Test defaults come from the environment-backed constants"""
    import buildphp
    layout = PhpenvLayout()
    assert layout.root == Path(buildphp.PHPENV_ROOT)
    assert layout.config_root == Path(buildphp.CONFIG_ROOT)

def test_version_and_config_dirs(layout, tmp_path):
    assert layout.version_dir("7.4.33") == layout.root / "versions" / "7.4.33"
    assert layout.config_dir("7.4.33") == tmp_path / "config" / "php" / "7.4.33"

def test_has_source(layout):
    assert not layout.has_source()
    layout.git_dir.mkdir(parents=True)
    assert layout.has_source()

def test_has_source_needs_git_directory(layout):
    """a plain checkout without .git is not a usable cache"""
    layout.src.mkdir(parents=True)
    (layout.src / ".git").write_text("gitdir: elsewhere\n")
    assert not layout.has_source()

def test_layout_setup(layout):
    """Test PhpenvLayout.setup() creates the versions directory"""
    layout.setup()
    assert layout.versions.is_dir()
    layout.setup()
