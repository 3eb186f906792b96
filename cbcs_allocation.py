import logging
import math
from typing import Dict, List, Optional, Set, Tuple


class CBCSAllocator:
    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def validate_selections(self, selections: List[Dict], offers: Dict[int, List[Tuple[int, int]]]) -> List[str]:
        """
        Check submitted selections against what the CBCS offers.

        offers maps courseId -> list of (sectionId, staffId) pairs.
        Returns a list of problems, empty when every selection is valid.
        """
        errors = []
        for index, selection in enumerate(selections, 1):
            course_id = selection.get('courseId')
            section_id = selection.get('sectionId')
            staff_id = selection.get('staffId')
            if course_id not in offers:
                errors.append(f"Selection {index}: course {course_id} is not part of this CBCS")
                continue
            if (section_id, staff_id) not in offers[course_id]:
                errors.append(
                    f"Selection {index}: section {section_id} with staff {staff_id} is not offered for course {course_id}"
                )
        return errors

    def section_capacities(self, choices: List[Dict], offers: Dict[int, List[Tuple[int, int]]]) -> Dict[int, int]:
        """Seats per section: students choosing the course spread evenly over its sections."""
        choosers = {}
        for choice in choices:
            choosers.setdefault(choice['courseId'], set()).add(choice['regno'])

        capacities = {}
        for course_id, students in choosers.items():
            sections = offers.get(course_id) or []
            if sections:
                capacities[course_id] = math.ceil(len(students) / len(sections))
        return capacities

    def allocate(self, choices: List[Dict], offers: Dict[int, List[Tuple[int, int]]],
                 enrolled: Optional[Dict[str, Set[int]]] = None) -> Tuple[List[Dict], Dict]:
        """
        Optimal allocation of students to sections.

        choices: dicts with id, regno, courseId, sectionId, staffId, preferenceOrder
        offers: courseId -> ordered list of (sectionId, staffId)
        enrolled: regno -> courseIds the student already holds

        Students are served in order of their earliest stored choice. Each
        student gets the first preferred section of every chosen course that
        still has room, or the least loaded section when all preferred ones
        are full.

        Returns:
            Tuple of (allocations, stats)
        """
        enrolled = enrolled or {}
        capacities = self.section_capacities(choices, offers)
        load = {(course_id, pair): 0 for course_id, pairs in offers.items() for pair in pairs}

        by_student = {}
        for choice in choices:
            by_student.setdefault(choice['regno'], []).append(choice)

        order = sorted(by_student, key=lambda regno: (min(c['id'] for c in by_student[regno]), regno))

        allocations = []
        fallbacks = 0
        for regno in order:
            student_choices = sorted(by_student[regno], key=lambda c: c['preferenceOrder'])

            courses = []
            for choice in student_choices:
                if choice['courseId'] not in courses:
                    courses.append(choice['courseId'])

            for course_id in courses:
                if course_id in enrolled.get(regno, set()):
                    self.logger.info(f"Skipping {regno}: already enrolled in course {course_id}")
                    continue
                pairs = offers.get(course_id)
                if not pairs:
                    self.logger.warning(f"Course {course_id} chosen by {regno} has no sections offered")
                    continue

                capacity = capacities[course_id]
                chosen = None
                for choice in student_choices:
                    pair = (choice['sectionId'], choice['staffId'])
                    if choice['courseId'] == course_id and pair in pairs and load[(course_id, pair)] < capacity:
                        chosen = pair
                        break

                fallback = chosen is None
                if fallback:
                    chosen = min(pairs, key=lambda p: load[(course_id, p)])
                    fallbacks += 1

                load[(course_id, chosen)] += 1
                allocations.append({
                    'regno': regno,
                    'courseId': course_id,
                    'sectionId': chosen[0],
                    'staffId': chosen[1],
                    'fallback': fallback,
                })

        stats = {'students': len(order), 'allocations': len(allocations), 'fallbacks': fallbacks}
        self.logger.info(f"Optimal allocation finished: {stats}")
        return allocations, stats


def allocate_optimal(choices: List[Dict], offers: Dict[int, List[Tuple[int, int]]],
                     enrolled: Optional[Dict[str, Set[int]]] = None) -> Tuple[List[Dict], Dict]:
    """
    Convenience wrapper for the CBCSAllocator class.
    """
    return CBCSAllocator().allocate(choices, offers, enrolled)


# Global instance for import
cbcs_allocator = CBCSAllocator()
