import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional
from datetime import datetime

from rulepack.config import resolve_path

@dataclass
class ParityCase:
    qid: str
    question: str
    expected_entity: Optional[str] = None
    expected_rule_ids: List[str] = field(default_factory=list)
    expected_sections: List[int] = field(default_factory=list)

def load_parity_cases(path) -> List[ParityCase]:
    cases_path = resolve_path(path)

    with open(cases_path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    cases = []
    for i, item in enumerate(data, 1):
        cases.append(ParityCase(
            qid=str(item.get('qid', i)),
            question=item['question'],
            expected_entity=item.get('expected_entity'),
            expected_rule_ids=[str(r) for r in item.get('expected_rule_ids') or []],
            expected_sections=[int(s) for s in item.get('expected_sections') or []],
        ))

    return cases

def compute_rule_metrics(bundle_ids: List[str], expected_ids: set) -> tuple:
    found = set(bundle_ids) & expected_ids

    precision = len(found) / len(bundle_ids) if bundle_ids else (1.0 if not expected_ids else 0.0)
    recall = len(found) / len(expected_ids) if expected_ids else 1.0

    return precision, recall

def evaluate_parity(engine, cases: List[ParityCase], verbose: bool = False) -> dict:
    if not cases:
        return {'num_cases': 0, 'metrics': {}, 'individual_results': []}

    entity_matches = []
    section_matches = []
    all_precision = []
    all_recall = []

    individual_results = []

    for i, case in enumerate(cases, 1):
        if verbose:
            print(f"  [{i}/{len(cases)}] {case.question[:50]}...")

        bundle = engine.ask(case.question).bundle
        entity = bundle.entities[0].name if bundle.entities else None
        sections = list(bundle.routing_trace.sections_selected)
        rule_ids = bundle.rule_ids

        entity_ok = entity == case.expected_entity
        sections_ok = sections == case.expected_sections if case.expected_sections else True
        precision, recall = compute_rule_metrics(rule_ids, set(case.expected_rule_ids))

        entity_matches.append(1.0 if entity_ok else 0.0)
        section_matches.append(1.0 if sections_ok else 0.0)
        all_precision.append(precision)
        all_recall.append(recall)

        individual_results.append({
            'qid': case.qid,
            'question': case.question,
            'entity': entity,
            'expected_entity': case.expected_entity,
            'entity_match': entity_ok,
            'sections_selected': sections,
            'expected_sections': case.expected_sections,
            'section_match': sections_ok,
            'rule_ids': rule_ids,
            'expected_rule_ids': case.expected_rule_ids,
            'rule_precision': precision,
            'rule_recall': recall,
        })

    n = len(cases)
    return {
        'num_cases': n,
        'metrics': {
            'entity_match': sum(entity_matches) / n,
            'section_match': sum(section_matches) / n,
            'rule_precision': sum(all_precision) / n,
            'rule_recall': sum(all_recall) / n,
        },
        'individual_results': individual_results,
    }

def save_parity_results(results: dict, run_dir, config) -> Path:
    output_file = Path(run_dir) / 'parity.json'

    results_to_save = {
        'timestamp': datetime.now().isoformat(),
        'num_cases': results['num_cases'],
        'metrics': results['metrics'],
        'individual_results': results['individual_results'],
        'config': {
            'budget': config['context']['budget'],
            'min_score': config['context']['min_score'],
            'top_per_section': config['context']['top_per_section'],
        }
    }

    with open(output_file, 'w', encoding='utf-8') as f:
        json.dump(results_to_save, f, indent=2)

    return output_file
