from dataclasses import dataclass
from enum import Enum
from typing import Dict


class UnsupportedLanguageError(ValueError):
    pass


class Language(str, Enum):
    CPP = 'cpp'
    C = 'c'
    PYTHON = 'python'
    JAVA = 'java'
    CSHARP = 'csharp'
    JAVASCRIPT = 'javascript'
    RUBY = 'ruby'
    GO = 'go'
    RUST = 'rust'


@dataclass(frozen=True)
class LanguageSpec:
    source_name: str
    run: str
    judge0_id: int
    compile: str = ''

    @property
    def compiled(self) -> bool:
        return bool(self.compile)


# Judge0 CE language ids
LANG_CONFIG: Dict[Language, LanguageSpec] = {
    Language.CPP: LanguageSpec(
        source_name='main.cpp',
        compile='g++ -O2 -std=gnu++17 main.cpp -o main.out',
        run='./main.out',
        judge0_id=54,
    ),
    Language.C: LanguageSpec(
        source_name='main.c',
        compile='gcc -O2 -std=gnu11 main.c -o main.out -lm',
        run='./main.out',
        judge0_id=50,
    ),
    Language.PYTHON: LanguageSpec(
        source_name='main.py',
        compile='python3 -m py_compile main.py',
        run='python3 main.py',
        judge0_id=71,
    ),
    Language.JAVA: LanguageSpec(
        source_name='Main.java',
        compile='javac Main.java',
        run='java -Xss64m Main',
        judge0_id=62,
    ),
    Language.CSHARP: LanguageSpec(
        source_name='Main.cs',
        compile='mcs -optimize+ -out:main.exe Main.cs',
        run='mono main.exe',
        judge0_id=51,
    ),
    Language.JAVASCRIPT: LanguageSpec(
        source_name='main.js',
        run='node main.js',
        judge0_id=63,
    ),
    Language.RUBY: LanguageSpec(
        source_name='main.rb',
        run='ruby main.rb',
        judge0_id=72,
    ),
    Language.GO: LanguageSpec(
        source_name='main.go',
        compile='go build -o main.out main.go',
        run='./main.out',
        judge0_id=60,
    ),
    Language.RUST: LanguageSpec(
        source_name='main.rs',
        compile='rustc -O -o main.out main.rs',
        run='./main.out',
        judge0_id=73,
    ),
}

ALIASES: Dict[str, Language] = {
    'c++': Language.CPP,
    'py': Language.PYTHON,
    'python3': Language.PYTHON,
    'js': Language.JAVASCRIPT,
    'node': Language.JAVASCRIPT,
    'c#': Language.CSHARP,
    'cs': Language.CSHARP,
    'golang': Language.GO,
    'rs': Language.RUST,
    'rb': Language.RUBY,
}


def resolve_language(name: str) -> Language:
    """Map a client-supplied language string onto a supported `Language`.

    Matching is case-insensitive and accepts a few common aliases. Raises
    `UnsupportedLanguageError` for anything else.
    """
    key = (name or '').strip().lower()
    if key in ALIASES:
        return ALIASES[key]
    try:
        return Language(key)
    except ValueError:
        raise UnsupportedLanguageError(f'Unsupported language: {name}')


def language_spec(language: Language) -> LanguageSpec:
    return LANG_CONFIG[language]
